"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- ServerScopedMixin: server_id for per-guild scoping
- generate_uuid: UUID generation for primary keys
- utcnow: timezone-aware "now" used for lifecycle timestamps
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, func
from sqlalchemy.orm import declared_attr

from src.db_base import Base


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated"
    )


class ServerScopedMixin:
    """
    Mixin that adds server_id column for per-guild scoping.

    server_id is the Discord guild snowflake, stored as a string.
    """

    @declared_attr
    def server_id(cls):
        return Column(
            String(32),
            nullable=False,
            index=True,
            comment="Discord guild (server) id"
        )


__all__ = ["Base", "TimestampMixin", "ServerScopedMixin", "generate_uuid", "utcnow"]
