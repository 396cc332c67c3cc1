"""
Base mixins and column types for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- UTCDateTime: timezone-aware UTC datetimes on every backend
- generate_uuid: UUID generation for primary keys
- utcnow: the single wall-clock source used by models and services
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, TypeDecorator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


def as_utc(value):
    """Coerce a datetime to aware UTC. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    PostgreSQL keeps the offset, SQLite drops it. Values are normalised to
    UTC on the way in and re-tagged as UTC on the way out so comparisons
    against utcnow() never mix naive and aware datetimes.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


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
