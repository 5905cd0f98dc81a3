"""
Delivery state machine with actor-scoped transition validation.

This module implements the DeliveryStateMachine class. It validates a
requested transition against the actor-scoped transition table, runs the
guard registered for the transition, and builds the next lifecycle variant
through the side effect registered for the target status. It never touches
the store: callers persist the result with a conditional update that pins
the state the decision was made from.
"""

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from delivery.core.exceptions import (
    InconsistentOrderState,
    InvalidTransition,
    NotAuthorized,
)
from delivery.core.logging import get_logger
from delivery.database.base import utcnow
from delivery.services.orders.enums import (
    ActorRole,
    DeliveryStatus,
    get_allowed_transitions,
    is_transition_allowed,
)
from delivery.services.orders.states import (
    AssignedToDriver,
    Cancelled,
    Delivered,
    OrderState,
    OutForDelivery,
    Preparing,
    ReadyForPickup,
    courier_of,
)

logger = get_logger(__name__)

Guard = Callable[[OrderState, ActorRole, Optional[uuid.UUID]], None]
SideEffect = Callable[..., OrderState]


class DeliveryStateMachine:
    """State machine for the order delivery lifecycle.

    Handles transition validation, ownership guards and construction of the
    next state variant. Stateless apart from its guard and side effect
    registries, so one instance can be shared.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        """Initialize state machine.

        Args:
            clock: Source of transition timestamps
        """
        self.clock = clock
        self._transition_guards: Dict[
            Tuple[DeliveryStatus, DeliveryStatus], Guard
        ] = self._initialize_guards()
        self._side_effects: Dict[DeliveryStatus, SideEffect] = (
            self._initialize_side_effects()
        )

    def _initialize_guards(
        self,
    ) -> Dict[Tuple[DeliveryStatus, DeliveryStatus], Guard]:
        """Transitions that only the courier holding the order may perform."""
        return {
            (DeliveryStatus.ASSIGNED_TO_DRIVER, DeliveryStatus.OUT_FOR_DELIVERY): (
                self._guard_assigned_courier
            ),
            (DeliveryStatus.OUT_FOR_DELIVERY, DeliveryStatus.DELIVERED): (
                self._guard_assigned_courier
            ),
            (DeliveryStatus.ASSIGNED_TO_DRIVER, DeliveryStatus.READY_FOR_PICKUP): (
                self._guard_assigned_courier
            ),
            (DeliveryStatus.OUT_FOR_DELIVERY, DeliveryStatus.READY_FOR_PICKUP): (
                self._guard_assigned_courier
            ),
            (DeliveryStatus.READY_FOR_PICKUP, DeliveryStatus.ASSIGNED_TO_DRIVER): (
                self._guard_claimant_identified
            ),
        }

    def _initialize_side_effects(self) -> Dict[DeliveryStatus, SideEffect]:
        return {
            DeliveryStatus.PREPARING: self._effect_preparing,
            DeliveryStatus.READY_FOR_PICKUP: self._effect_ready_for_pickup,
            DeliveryStatus.ASSIGNED_TO_DRIVER: self._effect_assigned,
            DeliveryStatus.OUT_FOR_DELIVERY: self._effect_out_for_delivery,
            DeliveryStatus.DELIVERED: self._effect_delivered,
            DeliveryStatus.CANCELLED: self._effect_cancelled,
        }

    def validate_transition(
        self,
        state: OrderState,
        target: DeliveryStatus,
        actor: ActorRole,
        actor_id: Optional[uuid.UUID] = None,
    ) -> None:
        """
        Validate that actor may move an order in state to target.

        Args:
            state: Current lifecycle variant
            target: Requested detailed status
            actor: Role requesting the transition
            actor_id: User requesting the transition

        Raises:
            InvalidTransition: If the transition is not in the table
            NotAuthorized: If the actor does not hold the order
        """
        current = state.status

        if not is_transition_allowed(current, target, actor):
            allowed = get_allowed_transitions(current, actor)
            logger.info(
                "Transition rejected",
                current_status=current.value,
                target_status=target.value,
                actor_role=actor.value,
                allowed=sorted(s.value for s in allowed),
            )
            raise InvalidTransition(
                current,
                target,
                actor,
                allowed_transitions=sorted(s.value for s in allowed),
            )

        guard = self._transition_guards.get((current, target))
        if guard is not None:
            guard(state, actor, actor_id)

    def next_state(
        self,
        state: OrderState,
        target: DeliveryStatus,
        actor: ActorRole,
        actor_id: Optional[uuid.UUID] = None,
        **details: Any,
    ) -> OrderState:
        """
        Validate a transition and build the resulting lifecycle variant.

        Args:
            state: Current lifecycle variant
            target: Requested detailed status
            actor: Role requesting the transition
            actor_id: User requesting the transition
            **details: Target-specific data (photo_ref for delivery)

        Returns:
            The lifecycle variant to persist

        Raises:
            InvalidTransition: If the transition is not permitted
            NotAuthorized: If the actor does not hold the order
        """
        self.validate_transition(state, target, actor, actor_id)
        effect = self._side_effects[target]
        return effect(state, actor_id, **details)

    # Transition Guards

    def _guard_assigned_courier(
        self,
        state: OrderState,
        actor: ActorRole,
        actor_id: Optional[uuid.UUID],
    ) -> None:
        holder = courier_of(state)
        if actor_id is None or holder != actor_id:
            logger.warning(
                "Courier acted on an order held by another courier",
                current_status=state.status.value,
                courier_id=str(actor_id) if actor_id else None,
                assigned_courier_id=str(holder) if holder else None,
            )
            raise NotAuthorized(
                "Order is not assigned to this courier",
                courier_id=str(actor_id) if actor_id else None,
            )

    def _guard_claimant_identified(
        self,
        state: OrderState,
        actor: ActorRole,
        actor_id: Optional[uuid.UUID],
    ) -> None:
        if actor_id is None:
            raise NotAuthorized("A claim requires a courier identity")

    # Side Effects

    def _effect_preparing(self, state: OrderState, actor_id, **details) -> OrderState:
        return Preparing()

    def _effect_ready_for_pickup(
        self, state: OrderState, actor_id, **details
    ) -> OrderState:
        return ReadyForPickup()

    def _effect_assigned(self, state: OrderState, actor_id, **details) -> OrderState:
        return AssignedToDriver(courier_id=actor_id, accepted_at=self.clock())

    def _effect_out_for_delivery(
        self, state: OrderState, actor_id, **details
    ) -> OrderState:
        _expect_variant(state, AssignedToDriver, DeliveryStatus.OUT_FOR_DELIVERY)
        return OutForDelivery(
            courier_id=state.courier_id,
            accepted_at=state.accepted_at,
            out_for_delivery_at=self.clock(),
        )

    def _effect_delivered(
        self,
        state: OrderState,
        actor_id,
        photo_ref: Optional[str] = None,
        **details,
    ) -> OrderState:
        _expect_variant(state, OutForDelivery, DeliveryStatus.DELIVERED)
        if not photo_ref:
            raise ValueError("Delivered state requires a photo reference")
        return Delivered(
            courier_id=state.courier_id,
            delivered_at=self.clock(),
            photo_ref=photo_ref,
        )

    def _effect_cancelled(self, state: OrderState, actor_id, **details) -> OrderState:
        return Cancelled(cancelled_at=self.clock())


def _expect_variant(state: OrderState, variant: type, target: DeliveryStatus) -> None:
    if not isinstance(state, variant):
        raise InconsistentOrderState(
            f"Cannot move to {target.value} from a {type(state).__name__} "
            f"labelled {state.status.value}",
            current_status=state.status.value,
            target_status=target.value,
        )
