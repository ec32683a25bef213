"""
Base mixins for database models.

Provides common functionality:
- UTCDateTime: timezone-aware datetime column that round-trips as UTC
- TimestampMixin: created_at, updated_at timestamps
- generate_uuid: UUID generation for primary keys
- utcnow: the single wall-clock source for model defaults
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, TypeDecorator

from thirsty.db_base import Base  # noqa: F401 - re-exported for models


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """
    Platform-independent timezone-aware datetime.

    PostgreSQL stores TIMESTAMPTZ natively; SQLite drops the offset and
    hands back naive values. Values are normalised to UTC on the way in
    and re-tagged as UTC on the way out so comparisons against aware
    datetimes never raise.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if value.tzinfo is None:
                raise ValueError("UTCDateTime requires an aware datetime")
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None:
            if value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        return value


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        comment="Timestamp when record was last updated"
    )
