"""
Applying and announcing order transitions.

OrderLifecycle is the unit of work shared by the claim coordinator, delivery
verification and the order service. A transition reads the stored state,
asks the state machine for the next variant, writes it with a single
conditional update pinned to the state it read, commits, and then announces
the change on the real-time feed, to the notification emitter and to the
location publisher registry.
"""

import uuid
from typing import Any, NoReturn, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from delivery.core.exceptions import DeliveryError, InvalidTransition, StoreUnavailable
from delivery.core.logging import get_logger
from delivery.database.models.order import Order
from delivery.services.notifications.service import NotificationEmitter
from delivery.services.orders.enums import ActorRole, DeliveryStatus
from delivery.services.orders.repository import OrderRepository
from delivery.services.orders.state_machine import DeliveryStateMachine
from delivery.services.orders.states import OrderState, state_from_order
from delivery.services.tracking.events import (
    AVAILABLE_ORDERS_TOPIC,
    EventBus,
    OrderChanged,
    order_topic,
)
from delivery.services.tracking.publisher import PublisherRegistry

logger = get_logger(__name__)


class OrderLifecycle:
    """
    Transition executor bound to one database session.

    Attributes:
        repository: Order store access
        state_machine: Transition rules
        event_bus: Real-time change feed, optional
        notifier: Status notification emitter, optional
        publishers: Running location publishers, optional
    """

    def __init__(
        self,
        session: AsyncSession,
        event_bus: Optional[EventBus] = None,
        notifier: Optional[NotificationEmitter] = None,
        publishers: Optional[PublisherRegistry] = None,
        state_machine: Optional[DeliveryStateMachine] = None,
    ):
        self.session = session
        self.repository = OrderRepository(session)
        self.state_machine = state_machine or DeliveryStateMachine()
        self.event_bus = event_bus
        self.notifier = notifier
        self.publishers = publishers

    async def load(self, order_id: uuid.UUID) -> tuple[Order, OrderState]:
        """
        Read an order and its lifecycle variant.

        Raises:
            OrderNotFound: If the order does not exist
            InconsistentOrderState: If the stored columns are inconsistent
        """
        order = await self.repository.get_order_or_raise(order_id)
        return order, state_from_order(order)

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StoreUnavailable("Failed to commit order change", error=str(e)) from e

    async def rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as e:
            logger.warning("Rollback failed", error=str(e))

    async def transition(
        self,
        order_id: uuid.UUID,
        target: DeliveryStatus,
        actor: ActorRole,
        actor_id: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
        **details: Any,
    ) -> Order:
        """
        Apply one transition and announce it.

        Args:
            order_id: Order to move
            target: Requested detailed status
            actor: Role requesting the transition
            actor_id: User requesting the transition
            reason: Optional reason recorded in history
            **details: Target-specific data for the state machine

        Returns:
            The order as stored after the transition

        Raises:
            OrderNotFound: If the order does not exist
            InvalidTransition: If the transition is not permitted, including
                when the order changed between the read and the write
            NotAuthorized: If the actor does not hold the order
            StoreUnavailable: If the store fails
        """
        _, state = await self.load(order_id)
        new_state = self.state_machine.next_state(state, target, actor, actor_id, **details)

        # The conditional write runs in its own transaction
        await self.commit()
        return await self.apply(order_id, state, new_state, actor, actor_id, reason)

    async def apply(
        self,
        order_id: uuid.UUID,
        expected: OrderState,
        new_state: OrderState,
        actor: ActorRole,
        actor_id: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Write a precomputed transition, commit and announce it.

        Raises:
            InvalidTransition: If the order is no longer in expected
            NotAuthorized: If the order changed hands since it was read
            StoreUnavailable: If the store fails
        """
        try:
            updated = await self.repository.apply_transition(
                order_id,
                expected,
                new_state,
                actor_role=actor,
                actor_id=actor_id,
                reason=reason,
            )
        except DeliveryError:
            await self.rollback()
            raise

        if updated is None:
            await self.rollback()
            await self._raise_lost_race(order_id, expected, new_state.status, actor, actor_id)

        await self.commit()
        await self.announce(updated, previous=expected.status)
        return updated

    async def _raise_lost_race(
        self,
        order_id: uuid.UUID,
        expected: OrderState,
        target: DeliveryStatus,
        actor: ActorRole,
        actor_id: Optional[uuid.UUID],
    ) -> NoReturn:
        _, current = await self.load(order_id)
        await self.rollback()

        logger.info(
            "Transition lost to a concurrent change",
            order_id=str(order_id),
            expected_status=expected.status.value,
            current_status=current.status.value,
            target_status=target.value,
        )

        self.state_machine.validate_transition(current, target, actor, actor_id)
        raise InvalidTransition(
            current.status,
            target,
            actor,
            user_message="This order was just updated. Refresh and try again.",
            order_id=str(order_id),
            concurrent_update=True,
        )

    async def announce(self, order: Order, previous: Optional[DeliveryStatus]) -> None:
        """
        Publish an applied change.

        Feed and notification failures are logged; the change is already
        committed and subscribers self-heal by re-fetching.
        """
        current = order.status_detailed
        event = OrderChanged(
            order_id=order.id,
            status_detailed=current,
            previous_status=previous,
            assigned_courier_id=order.assigned_courier_id,
            changed_at=order.updated_at,
        )

        if self.event_bus is not None:
            topics = [order_topic(order.id)]
            if DeliveryStatus.READY_FOR_PICKUP in (previous, current):
                topics.append(AVAILABLE_ORDERS_TOPIC)
            for topic in topics:
                try:
                    await self.event_bus.publish(topic, event)
                except DeliveryError as e:
                    logger.warning(
                        "Order change not announced",
                        order_id=str(order.id),
                        topic=topic,
                        error=str(e),
                    )

        if self.notifier is not None:
            await self.notifier.emit(order.customer_id, order.id, current)

        if self.publishers is not None and not current.has_courier():
            await self.publishers.stop(order.id)
