"""SQLAlchemy ORM models for the URL shortener service.

This module defines the database schema using SQLAlchemy declarative models
with proper indexing and timestamp management.

Data Model Layout
=================
::
    urls table
    ├─ id (SERIAL PRIMARY KEY)
    ├─ short_code (VARCHAR(20) UNIQUE, INDEXED)
    ├─ original_url (TEXT NOT NULL)
    ├─ user_id (INTEGER NULL, reference only)
    ├─ custom_alias (BOOLEAN DEFAULT FALSE)
    ├─ clicks (BIGINT DEFAULT 0)
    ├─ is_active (BOOLEAN DEFAULT TRUE)
    ├─ expires_at (TIMESTAMPTZ NULL, INDEXED)
    ├─ created_at (TIMESTAMPTZ, DEFAULT NOW())
    └─ updated_at (TIMESTAMPTZ, DEFAULT NOW(), ON UPDATE)

    click_events table
    ├─ id (SERIAL PRIMARY KEY)
    ├─ short_code (VARCHAR(20), INDEXED, no FK)
    ├─ ip_address (VARCHAR(45))
    ├─ user_agent (TEXT)
    ├─ referer (TEXT)
    ├─ device_type / browser / os (VARCHAR)
    └─ clicked_at (TIMESTAMPTZ, DEFAULT NOW(), INDEXED)

Key Behaviours
===============
- short_code is unique; the unique constraint is what finally guarantees
  collision-free codes under concurrent writers.
- Records are never hard-deleted here; deactivation flips ``is_active``.
- ``clicks`` is only ever changed with ``UPDATE ... SET clicks = clicks + 1``.
- Click events reference URLs by short code so analytics rows outlive any
  change to the URL row.

Classes:
    URL:  A shortened URL mapping with activation, expiration and click count.
    ClickEvent:  One recorded redirect.
"""

import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from urlshortener.clock import as_utc, utcnow
from urlshortener.database import Base

__all__ = ["ClickEvent", "URL"]


class URL(Base):
    __tablename__ = "urls"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_code: Mapped[str] = mapped_column(String(20), unique=True, index=True, nullable=False)
    original_url: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    custom_alias: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    clicks: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def is_expired(self, now: datetime.datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > as_utc(self.expires_at)

    def __repr__(self) -> str:
        return f"<URL(id={self.id}, short_code='{self.short_code}', active={self.is_active}, clicks={self.clicks})>"


class ClickEvent(Base):
    __tablename__ = "click_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_code: Mapped[str] = mapped_column(String(20), index=True, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    referer: Mapped[str | None] = mapped_column(Text, nullable=True)
    device_type: Mapped[str] = mapped_column(String(20), nullable=False)
    browser: Mapped[str] = mapped_column(String(50), nullable=False)
    os: Mapped[str] = mapped_column(String(50), nullable=False)
    clicked_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True, nullable=False
    )

    def __repr__(self) -> str:
        return f"<ClickEvent(id={self.id}, short_code='{self.short_code}', browser='{self.browser}')>"
