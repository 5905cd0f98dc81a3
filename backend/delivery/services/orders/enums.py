"""
Order status enums and the actor-scoped transition table.

This module defines the coarse and detailed order status enums, the actor
roles and the transition table that the state machine enforces. The table is
keyed by actor role so the same (from, to) pair can be legal for one role and
illegal for another.
"""

from enum import Enum
from typing import Dict, FrozenSet, Set, Tuple


class OrderStatus(str, Enum):
    """Coarse customer-facing order status.

    Derived from DeliveryStatus; never written independently.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DeliveryStatus(str, Enum):
    """Fine-grained delivery lifecycle status.

    Valid transitions:
    - PENDING -> PREPARING (kitchen), CANCELLED
    - PREPARING -> READY_FOR_PICKUP (kitchen), CANCELLED
    - READY_FOR_PICKUP -> ASSIGNED_TO_DRIVER (courier claim), CANCELLED
    - ASSIGNED_TO_DRIVER -> OUT_FOR_DELIVERY (courier), READY_FOR_PICKUP
      (courier release), CANCELLED
    - OUT_FOR_DELIVERY -> DELIVERED (courier, verified), READY_FOR_PICKUP
      (courier release)
    - DELIVERED -> (terminal state)
    - CANCELLED -> (terminal state)
    """

    PENDING = "pending"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    ASSIGNED_TO_DRIVER = "assigned_to_driver"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if status is a terminal state."""
        return self in {DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED}

    def has_courier(self) -> bool:
        """Check if a courier holds the order in this status."""
        return self in ACTIVE_DELIVERY_STATUSES

    def to_order_status(self) -> OrderStatus:
        """Map to the coarse customer-facing status."""
        if self == DeliveryStatus.DELIVERED:
            return OrderStatus.COMPLETED
        if self == DeliveryStatus.CANCELLED:
            return OrderStatus.CANCELLED
        return OrderStatus.PENDING


class ActorRole(str, Enum):
    """Role of the party requesting a transition."""

    CUSTOMER = "customer"
    COURIER = "courier"
    KITCHEN = "kitchen"
    SYSTEM = "system"


ACTIVE_DELIVERY_STATUSES: FrozenSet[DeliveryStatus] = frozenset(
    {DeliveryStatus.ASSIGNED_TO_DRIVER, DeliveryStatus.OUT_FOR_DELIVERY}
)

CUSTOMER_CANCELLABLE_STATUSES: FrozenSet[DeliveryStatus] = frozenset(
    {
        DeliveryStatus.PENDING,
        DeliveryStatus.PREPARING,
        DeliveryStatus.READY_FOR_PICKUP,
        DeliveryStatus.ASSIGNED_TO_DRIVER,
    }
)

Transition = Tuple[DeliveryStatus, DeliveryStatus]

# Actor-scoped transition table
TRANSITIONS: Dict[ActorRole, FrozenSet[Transition]] = {
    ActorRole.CUSTOMER: frozenset(
        (status, DeliveryStatus.CANCELLED)
        for status in CUSTOMER_CANCELLABLE_STATUSES
    ),
    ActorRole.COURIER: frozenset(
        {
            (DeliveryStatus.READY_FOR_PICKUP, DeliveryStatus.ASSIGNED_TO_DRIVER),
            (DeliveryStatus.ASSIGNED_TO_DRIVER, DeliveryStatus.OUT_FOR_DELIVERY),
            (DeliveryStatus.OUT_FOR_DELIVERY, DeliveryStatus.DELIVERED),
            (DeliveryStatus.ASSIGNED_TO_DRIVER, DeliveryStatus.READY_FOR_PICKUP),
            (DeliveryStatus.OUT_FOR_DELIVERY, DeliveryStatus.READY_FOR_PICKUP),
        }
    ),
    ActorRole.KITCHEN: frozenset(
        {
            (DeliveryStatus.PENDING, DeliveryStatus.PREPARING),
            (DeliveryStatus.PREPARING, DeliveryStatus.READY_FOR_PICKUP),
        }
    ),
    ActorRole.SYSTEM: frozenset(
        {
            (DeliveryStatus.PENDING, DeliveryStatus.PREPARING),
            (DeliveryStatus.PREPARING, DeliveryStatus.READY_FOR_PICKUP),
        }
        | {
            (status, DeliveryStatus.CANCELLED)
            for status in DeliveryStatus
            if not status.is_terminal()
        }
    ),
}

def is_transition_allowed(
    current: DeliveryStatus,
    target: DeliveryStatus,
    actor: ActorRole,
) -> bool:
    """Check whether actor may move an order from current to target."""
    return (current, target) in TRANSITIONS.get(actor, frozenset())


def get_allowed_transitions(
    current: DeliveryStatus,
    actor: ActorRole,
) -> Set[DeliveryStatus]:
    """Get all statuses actor may move an order to from current."""
    return {
        target
        for source, target in TRANSITIONS.get(actor, frozenset())
        if source == current
    }
