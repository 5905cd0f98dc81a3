"""
Declarative base for the order store.

Models use the generic SQLAlchemy column types only, so one schema serves
PostgreSQL in production and SQLite in tests.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import DateTime, Uuid
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


class Base(AsyncAttrs, DeclarativeBase):
    """Declarative base with JSON-friendly serialization."""

    __abstract__ = True

    def to_dict(self, exclude: Optional[set[str]] = None) -> dict[str, Any]:
        """
        Column values as a JSON-compatible dict.

        UUIDs and decimals become strings, datetimes ISO 8601 strings and
        enums their values.

        Args:
            exclude: Column names to leave out, e.g. secrets like delivery_code
        """
        skip = exclude or set()
        return {
            column.name: _json_value(getattr(self, column.name))
            for column in self.__table__.columns
            if column.name not in skip
        }

    def __repr__(self) -> str:
        keys = ", ".join(
            f"{column.name}={getattr(self, column.name, None)!r}"
            for column in self.__table__.primary_key.columns
        )
        return f"<{type(self).__name__} {keys}>"


class Record(Base):
    """
    Abstract table with a UUID key and creation and update timestamps.

    Timestamps are generated in Python with microsecond precision, which
    keeps creation order stable on every backend.

    Example:
        class DeliveryPhoto(Record):
            __tablename__ = "delivery_photos"

            storage_path: Mapped[str] = mapped_column(String(512))
    """

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
