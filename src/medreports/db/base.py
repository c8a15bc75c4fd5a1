"""
SQLAlchemy Base class and common model mixins.

All models should inherit from Base to be registered on the metadata.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, String, TypeDecorator, func
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def load_json(raw: str | None, default: Any) -> Any:
    """Decode a JSON text column, falling back to ``default`` when empty."""
    if not raw:
        return default
    return json.loads(raw)


def dump_json(value: Any) -> str:
    """Encode a value for a JSON text column."""
    return json.dumps(value, default=str)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    SQLite has no timezone support, so values are stored as naive UTC there
    and re-tagged as UTC on load. Other dialects keep ``timestamptz``.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        value = ensure_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Provides common configuration and type annotations.
    """

    type_annotation_map = {
        str: String,
        datetime: UTCDateTime,
    }

    @declared_attr.directive
    @classmethod
    def __tablename__(cls) -> str:
        """Generate table name from class name (snake_case)."""
        name = cls.__name__
        result = [name[0].lower()]
        for char in name[1:]:
            if char.isupper():
                result.extend(["_", char.lower()])
            else:
                result.append(char)
        return "".join(result) + "s"


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamps.

    Timestamps are automatically set on insert and update.
    """

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )


class UUIDMixin:
    """
    Mixin that adds a UUID primary key.

    Stored as a 36 character string so the schema stays portable.
    """

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        nullable=False,
    )


class SoftDeleteMixin:
    """
    Mixin that adds soft delete functionality.

    Records are marked as deleted instead of being removed from the database.
    """

    deleted_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        default=None,
        nullable=True,
    )

    @property
    def is_deleted(self) -> bool:
        """Check if record is soft-deleted."""
        return self.deleted_at is not None

    def soft_delete(self) -> None:
        """Mark record as deleted."""
        self.deleted_at = utc_now()


class BaseModel(Base, UUIDMixin, TimestampMixin):
    """
    Abstract base model with UUID primary key and timestamps.

    Most models should inherit from this class.
    """

    __abstract__ = True

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary."""
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}

    def update(self, **kwargs: Any) -> None:
        """Update model attributes from kwargs."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)


class SoftDeleteModel(BaseModel, SoftDeleteMixin):
    """
    Abstract base model with soft delete support.

    Use this for models where history must be preserved after deletion.
    """

    __abstract__ = True
