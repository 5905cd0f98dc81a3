"""
Lifecycle state variants for an order.

Each delivery status is a frozen dataclass carrying exactly the fields that
are meaningful in that status, so an assigned order always has a courier and
a ready order never does. The order row is a flattening of these variants:
state_from_order() reads one back and raises InconsistentOrderState when the
columns describe a combination no variant allows, and state_columns() gives
the column values a variant is written as.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from delivery.core.exceptions import InconsistentOrderState
from delivery.services.orders.enums import DeliveryStatus


@dataclass(frozen=True)
class Pending:
    status = DeliveryStatus.PENDING


@dataclass(frozen=True)
class Preparing:
    status = DeliveryStatus.PREPARING


@dataclass(frozen=True)
class ReadyForPickup:
    status = DeliveryStatus.READY_FOR_PICKUP


@dataclass(frozen=True)
class AssignedToDriver:
    courier_id: uuid.UUID
    accepted_at: datetime

    status = DeliveryStatus.ASSIGNED_TO_DRIVER


@dataclass(frozen=True)
class OutForDelivery:
    courier_id: uuid.UUID
    accepted_at: datetime
    out_for_delivery_at: datetime

    status = DeliveryStatus.OUT_FOR_DELIVERY


@dataclass(frozen=True)
class Delivered:
    courier_id: uuid.UUID
    delivered_at: datetime
    photo_ref: str

    status = DeliveryStatus.DELIVERED


@dataclass(frozen=True)
class Cancelled:
    cancelled_at: datetime

    status = DeliveryStatus.CANCELLED


OrderState = Union[
    Pending,
    Preparing,
    ReadyForPickup,
    AssignedToDriver,
    OutForDelivery,
    Delivered,
    Cancelled,
]


def courier_of(state: OrderState) -> Optional[uuid.UUID]:
    """Courier currently holding the order, if any."""
    if isinstance(state, (AssignedToDriver, OutForDelivery)):
        return state.courier_id
    return None


def _require(order: Any, *fields: str) -> None:
    missing = [name for name in fields if getattr(order, name) is None]
    if missing:
        raise InconsistentOrderState(
            f"Order in {order.status_detailed.value} is missing {', '.join(missing)}",
            order_id=str(order.id),
            missing=missing,
        )


def _forbid(order: Any, *fields: str) -> None:
    present = [name for name in fields if getattr(order, name) is not None]
    if present:
        raise InconsistentOrderState(
            f"Order in {order.status_detailed.value} must not have {', '.join(present)}",
            order_id=str(order.id),
            present=present,
        )


def state_from_order(order: Any) -> OrderState:
    """
    Read the lifecycle variant stored on an order row.

    Args:
        order: Order instance (or any object with the lifecycle columns)

    Returns:
        The variant for the order's detailed status

    Raises:
        InconsistentOrderState: If the columns violate lifecycle invariants
    """
    status = DeliveryStatus(order.status_detailed)

    if status in (
        DeliveryStatus.PENDING,
        DeliveryStatus.PREPARING,
        DeliveryStatus.READY_FOR_PICKUP,
    ):
        _forbid(order, "assigned_courier_id")
        return {
            DeliveryStatus.PENDING: Pending,
            DeliveryStatus.PREPARING: Preparing,
            DeliveryStatus.READY_FOR_PICKUP: ReadyForPickup,
        }[status]()

    if status == DeliveryStatus.ASSIGNED_TO_DRIVER:
        _require(order, "assigned_courier_id", "courier_accepted_at")
        return AssignedToDriver(
            courier_id=order.assigned_courier_id,
            accepted_at=order.courier_accepted_at,
        )

    if status == DeliveryStatus.OUT_FOR_DELIVERY:
        _require(
            order,
            "assigned_courier_id",
            "courier_accepted_at",
            "out_for_delivery_at",
        )
        return OutForDelivery(
            courier_id=order.assigned_courier_id,
            accepted_at=order.courier_accepted_at,
            out_for_delivery_at=order.out_for_delivery_at,
        )

    if status == DeliveryStatus.DELIVERED:
        _require(
            order,
            "delivered_at",
            "delivery_photo_ref",
            "delivered_by_courier_id",
        )
        _forbid(order, "assigned_courier_id")
        return Delivered(
            courier_id=order.delivered_by_courier_id,
            delivered_at=order.delivered_at,
            photo_ref=order.delivery_photo_ref,
        )

    _require(order, "cancelled_at")
    _forbid(order, "assigned_courier_id")
    return Cancelled(cancelled_at=order.cancelled_at)


def state_columns(state: OrderState) -> dict[str, Any]:
    """
    Column values that represent a variant on the order row.

    Only the lifecycle columns a variant owns are returned. Releasing an
    order back to ReadyForPickup clears the assignment timestamps; other
    timestamps from earlier states are left as recorded.

    Args:
        state: Target lifecycle variant

    Returns:
        Mapping of column name to value for an UPDATE statement
    """
    values: dict[str, Any] = {
        "status_detailed": state.status,
        "status": state.status.to_order_status(),
        "assigned_courier_id": courier_of(state),
    }

    if isinstance(state, ReadyForPickup):
        values["courier_accepted_at"] = None
        values["out_for_delivery_at"] = None
    elif isinstance(state, AssignedToDriver):
        values["courier_accepted_at"] = state.accepted_at
        values["out_for_delivery_at"] = None
    elif isinstance(state, OutForDelivery):
        values["courier_accepted_at"] = state.accepted_at
        values["out_for_delivery_at"] = state.out_for_delivery_at
    elif isinstance(state, Delivered):
        values["delivered_at"] = state.delivered_at
        values["delivery_photo_ref"] = state.photo_ref
        values["delivered_by_courier_id"] = state.courier_id
    elif isinstance(state, Cancelled):
        values["cancelled_at"] = state.cancelled_at

    return values
