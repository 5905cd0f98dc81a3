"""
Courier location sample model.

Location samples form an append-only stream per courier. A courier's current
location is the most recent sample by sampled_at; retention is handled
outside the application.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from delivery.database.base import Base, utcnow


class CourierLocation(Base):
    """
    A single GPS sample published by an active courier.

    Attributes:
        id: Unique sample identifier
        courier_id: Courier that produced the sample
        order_id: Order being delivered when the sample was taken
        latitude: Latitude in decimal degrees
        longitude: Longitude in decimal degrees
        accuracy: Horizontal accuracy in meters
        heading: Direction of travel in degrees
        speed: Speed in meters per second
        sampled_at: When the device produced the fix
    """

    __tablename__ = "courier_locations"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    courier_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        comment="Courier that produced the sample",
    )

    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        index=True,
        comment="Order being delivered",
    )

    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    heading: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    speed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    sampled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the device produced the fix",
    )

    __table_args__ = (
        # Latest sample per courier
        Index("ix_courier_locations_courier_sampled", "courier_id", "sampled_at"),
    )
