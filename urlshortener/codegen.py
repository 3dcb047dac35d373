"""Short code generation and base62 helpers.

Random codes come from ``nanoid`` over the 62-symbol alphabet, which draws
symbols uniformly from a CSPRNG. ``encode``/``decode`` give a deterministic
bijection between non-negative integers and the same alphabet.

The generator alone never guarantees uniqueness; the caller checks the store
and retries (see ``URLShorteningService.create_short_url``), and the store's
unique constraint is the final word.

Example:
    >>> encode(12345)
    '3d7'
    >>> decode("3d7")
    12345
"""

from nanoid import generate as _nanoid_generate

from urlshortener.exceptions import InvalidAliasError

__all__ = [
    "BASE62_ALPHABET",
    "MIN_ALIAS_LENGTH",
    "generate",
    "encode",
    "decode",
    "is_valid_alphabet",
    "validate_alias",
]

BASE62_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
BASE = len(BASE62_ALPHABET)
MIN_ALIAS_LENGTH = 3

_SYMBOL_VALUES = {symbol: index for index, symbol in enumerate(BASE62_ALPHABET)}


def generate(length: int) -> str:
    if not isinstance(length, int) or length <= 0:
        raise ValueError(f"length must be a positive integer, got {length!r}")
    return _nanoid_generate(BASE62_ALPHABET, length)


def encode(number: int) -> str:
    """Encode a non-negative integer, most significant symbol first.

    Args:
        number: Number to encode (must be non-negative)

    Returns:
        str: Base62 encoded string; zero encodes to a single ``"0"``
    """
    if number < 0:
        raise ValueError("Number must be non-negative")

    if number == 0:
        return BASE62_ALPHABET[0]

    result = []
    while number > 0:
        number, remainder = divmod(number, BASE)
        result.append(BASE62_ALPHABET[remainder])

    return "".join(result[::-1])


def decode(code: str) -> int:
    """Decode a base62 string produced by :func:`encode`.

    Raises:
        ValueError: If ``code`` is empty or contains a symbol outside the alphabet
    """
    if not code:
        raise ValueError("Code must be non-empty")

    number = 0
    for symbol in code:
        try:
            number = number * BASE + _SYMBOL_VALUES[symbol]
        except KeyError:
            raise ValueError(f"Invalid base62 symbol {symbol!r}") from None
    return number


def is_valid_alphabet(value: str | None) -> bool:
    if not value:
        return False
    return all(symbol in _SYMBOL_VALUES for symbol in value)


def validate_alias(alias: str, max_length: int) -> str:
    """Check a user supplied alias and return it unchanged.

    Raises:
        InvalidAliasError: If the alias is shorter than three characters, longer
            than ``max_length`` or uses symbols outside the alphabet
    """
    if len(alias) < MIN_ALIAS_LENGTH or len(alias) > max_length:
        raise InvalidAliasError(f"Custom alias must be between {MIN_ALIAS_LENGTH} and {max_length} characters")
    if not is_valid_alphabet(alias):
        raise InvalidAliasError("Custom alias can only contain alphanumeric characters")
    return alias
