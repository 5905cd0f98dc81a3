"""
Delivery evidence photo model.

One record per order: the unique order_id lets a retried completion find and
reuse the photo it already uploaded instead of creating a second record.
"""

import uuid

from sqlalchemy import String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from delivery.database.base import Record


class DeliveryPhoto(Record):
    """
    Evidence photo captured by the courier at the door.

    Attributes:
        id: Unique photo record identifier
        order_id: Order the photo proves delivery for
        courier_id: Courier that captured the photo
        storage_path: Durable blob store reference
    """

    __tablename__ = "delivery_photos"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        comment="Order the photo proves delivery for",
    )

    courier_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        comment="Courier that captured the photo",
    )

    storage_path: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        comment="Durable blob store reference",
    )

    __table_args__ = (
        UniqueConstraint("order_id", name="uq_delivery_photos_order_id"),
    )
