"""Exception hierarchy for the URL shortener core.

``ShortenerError`` is the root so callers can catch everything raised by the
service layer in one place. Deactivated and expired codes are not exceptions:
they are ``ResolutionStatus`` values on the redirect path.
"""

__all__ = [
    "ShortenerError",
    "ShortURLNotFoundError",
    "InvalidAliasError",
    "DuplicateAliasError",
    "ShortCodeCollisionError",
    "GenerationExhaustedError",
]


class ShortenerError(Exception):
    """Base class for all URL shortener errors."""


class ShortURLNotFoundError(ShortenerError):
    """No record exists for the given short code."""

    def __init__(self, short_code: str):
        self.short_code = short_code
        super().__init__(f"Short URL '{short_code}' not found")


class InvalidAliasError(ShortenerError):
    """A custom alias has the wrong length or characters outside the alphabet."""


class DuplicateAliasError(ShortenerError):
    """A custom alias is already taken by another record."""

    def __init__(self, alias: str):
        self.alias = alias
        super().__init__(f"Custom alias '{alias}' is already taken")


class ShortCodeCollisionError(ShortenerError):
    """The store rejected an insert because the short code already exists."""

    def __init__(self, short_code: str):
        self.short_code = short_code
        super().__init__(f"Short code '{short_code}' already exists")


class GenerationExhaustedError(ShortenerError):
    """No free short code was found within the attempt budget."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Failed to generate a unique short code after {attempts} attempts")
