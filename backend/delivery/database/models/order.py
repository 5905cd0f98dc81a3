"""
Order model for the delivery lifecycle.

This module defines the Order model, the single source of truth for an
order's delivery state, and the OrderStatusHistory audit trail. Lifecycle
columns are only ever written through the state variants in
delivery.services.orders.states; the table-level check constraint keeps the
courier assignment consistent with the detailed status even for writes that
bypass the application.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from delivery.database.base import Base, Record, utcnow
from delivery.services.orders.enums import ActorRole, DeliveryStatus, OrderStatus


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def status_column_type(enum_cls, name: str) -> SQLEnum:
    """Portable enum column storing the lowercase enum values."""
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=_enum_values,
    )


class Order(Record):
    """
    Order placed by a customer and fulfilled by at most one courier.

    Attributes:
        id: Unique order identifier (UUID)
        customer_id: User who placed the order and receives notifications
        status: Coarse status derived from status_detailed
        status_detailed: Authoritative delivery lifecycle status
        assigned_courier_id: Courier currently holding the order
        courier_accepted_at: When the current courier claimed the order
        out_for_delivery_at: When the current courier started the delivery
        delivered_at: When delivery was verified and completed
        cancelled_at: When the order was cancelled
        delivered_by_courier_id: Courier who completed the delivery
        delivery_code: 5-digit code the customer gives the courier
        delivery_photo_ref: Blob reference of the evidence photo
        address: Delivery address snapshot taken at checkout
        items: Line items supplied by the cart service
        total_amount: Order total supplied by the cart service
        notes: Customer notes for the order
    """

    __tablename__ = "orders"

    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
        comment="User who placed the order",
    )

    status: Mapped[OrderStatus] = mapped_column(
        status_column_type(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        comment="Coarse customer-facing status",
    )

    status_detailed: Mapped[DeliveryStatus] = mapped_column(
        status_column_type(DeliveryStatus, "delivery_status"),
        nullable=False,
        default=DeliveryStatus.READY_FOR_PICKUP,
        index=True,
        comment="Authoritative delivery lifecycle status",
    )

    assigned_courier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        index=True,
        comment="Courier currently holding the order",
    )

    courier_accepted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the current courier claimed the order",
    )

    out_for_delivery_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the current courier started the delivery",
    )

    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the delivery was completed",
    )

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the order was cancelled",
    )

    delivered_by_courier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        comment="Courier who completed the delivery",
    )

    delivery_code: Mapped[str] = mapped_column(
        String(5),
        nullable=False,
        comment="5-digit code required to complete the delivery",
    )

    delivery_photo_ref: Mapped[Optional[str]] = mapped_column(
        String(512),
        nullable=True,
        comment="Blob reference of the delivery evidence photo",
    )

    address: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Delivery address snapshot",
    )

    items: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Immutable line items",
    )

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        comment="Order total",
    )

    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Customer notes",
    )

    __table_args__ = (
        CheckConstraint(
            "(status_detailed IN ('assigned_to_driver', 'out_for_delivery')) "
            "= (assigned_courier_id IS NOT NULL)",
            name="ck_orders_assignment_matches_status",
        ),
        CheckConstraint(
            "length(delivery_code) = 5",
            name="ck_orders_delivery_code_length",
        ),
        CheckConstraint(
            "total_amount >= 0",
            name="ck_orders_total_amount_non_negative",
        ),
        # Available queue: ready and unassigned, oldest first
        Index(
            "ix_orders_available_queue",
            "status_detailed",
            "assigned_courier_id",
            "created_at",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, status_detailed="
            f"{getattr(self.status_detailed, 'value', self.status_detailed)}, "
            f"assigned_courier_id={self.assigned_courier_id})>"
        )


class OrderStatusHistory(Base):
    """
    Append-only audit trail of applied order transitions.

    Attributes:
        id: Unique history entry identifier
        order_id: Order the transition was applied to
        from_status: Detailed status before the transition
        to_status: Detailed status after the transition
        actor_role: Role that requested the transition
        actor_id: User that requested the transition, if any
        reason: Optional free-text reason
        created_at: When the transition was applied
    """

    __tablename__ = "order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
        comment="Order the transition was applied to",
    )

    from_status: Mapped[Optional[DeliveryStatus]] = mapped_column(
        status_column_type(DeliveryStatus, "history_from_status"),
        nullable=True,
        comment="Detailed status before the transition",
    )

    to_status: Mapped[DeliveryStatus] = mapped_column(
        status_column_type(DeliveryStatus, "history_to_status"),
        nullable=False,
        comment="Detailed status after the transition",
    )

    actor_role: Mapped[ActorRole] = mapped_column(
        status_column_type(ActorRole, "actor_role"),
        nullable=False,
        comment="Role that requested the transition",
    )

    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        comment="User that requested the transition",
    )

    reason: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Reason for the transition",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the transition was applied",
    )
