"""
Delivery service orchestrating the order lifecycle.

This module implements the DeliveryService class, the entry point the API
uses for every lifecycle operation: order creation, kitchen progress,
courier claim, start, release and completion, customer cancellation and
location reports. It wires the claim coordinator and delivery verifier to a
shared OrderLifecycle so every change is written with a conditional update
and announced once.
"""

import secrets
import uuid
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from delivery.core.config import get_settings
from delivery.core.exceptions import (
    NotAuthorized,
    OrderNotFound,
    PreconditionFailed,
)
from delivery.core.logging import get_logger
from delivery.core.retry import retry_with_backoff
from delivery.database.models.order import Order, OrderStatusHistory
from delivery.services.notifications.service import NotificationEmitter
from delivery.services.orders.claims import ClaimCoordinator
from delivery.services.orders.enums import ActorRole, DeliveryStatus
from delivery.services.orders.lifecycle import OrderLifecycle
from delivery.services.orders.state_machine import DeliveryStateMachine
from delivery.services.orders.states import (
    Pending,
    Preparing,
    ReadyForPickup,
    courier_of,
)
from delivery.services.orders.verification import DeliveryVerifier, PhotoUpload
from delivery.services.storage.blob_store import BlobStore
from delivery.services.tracking.events import EventBus
from delivery.services.tracking.publisher import PositionFix, PublisherRegistry

logger = get_logger(__name__)

INITIAL_STATES = {
    "pending": Pending(),
    "preparing": Preparing(),
    "ready_for_pickup": ReadyForPickup(),
}


def generate_delivery_code() -> str:
    """Uniformly random 5-digit code in [10000, 99999]."""
    return str(10000 + secrets.randbelow(90000))


class DeliveryService:
    """
    Delivery lifecycle operations for customers, couriers and the kitchen.

    Attributes:
        lifecycle: Transition executor bound to the session
        claims: Claim coordinator
        verifier: Delivery verification
        publishers: Running location publishers
    """

    def __init__(
        self,
        session: AsyncSession,
        event_bus: Optional[EventBus] = None,
        notifier: Optional[NotificationEmitter] = None,
        blob_store: Optional[BlobStore] = None,
        publishers: Optional[PublisherRegistry] = None,
        state_machine: Optional[DeliveryStateMachine] = None,
    ):
        """
        Initialize delivery service.

        Args:
            session: Async database session
            event_bus: Real-time change feed
            notifier: Status notification emitter
            blob_store: Evidence photo storage, required for completion
            publishers: Location publisher registry
            state_machine: Transition rules
        """
        self.session = session
        self.lifecycle = OrderLifecycle(
            session,
            event_bus=event_bus,
            notifier=notifier,
            publishers=publishers,
            state_machine=state_machine,
        )
        self.repository = self.lifecycle.repository
        self.claims = ClaimCoordinator(self.lifecycle)
        self.verifier = DeliveryVerifier(self.lifecycle, blob_store) if blob_store else None
        self.event_bus = event_bus
        self.publishers = publishers

    # ========================================================================
    # Customer
    # ========================================================================

    async def create_order(
        self,
        customer_id: uuid.UUID,
        items: Sequence[dict[str, Any]],
        total_amount: Decimal,
        address: dict[str, Any],
        notes: Optional[str] = None,
        delivery_code: Optional[str] = None,
    ) -> Order:
        """
        Create an order from a checked-out cart.

        The order starts in the deployment's configured initial status.

        Args:
            customer_id: Ordering user
            items: Line items from the cart service
            total_amount: Order total from the cart service
            address: Delivery address snapshot
            notes: Optional customer notes
            delivery_code: Code to use instead of a generated one

        Returns:
            Created order
        """
        initial_state = INITIAL_STATES[get_settings().order_initial_status]
        order = await self.repository.create_order(
            customer_id=customer_id,
            delivery_code=delivery_code or generate_delivery_code(),
            total_amount=total_amount,
            items=items,
            address=address,
            initial_state=initial_state,
            notes=notes,
        )
        await self.lifecycle.commit()
        await self.lifecycle.announce(order, previous=None)
        return order

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        actor: ActorRole,
        actor_id: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Cancel an order.

        Customers may cancel their own orders until the courier is on the
        way; the system may cancel any order that is not finished.

        Raises:
            NotAuthorized: If a customer cancels someone else's order
            InvalidTransition: If the order can no longer be cancelled
        """
        if actor == ActorRole.CUSTOMER:
            order, _ = await self.lifecycle.load(order_id)
            if order.customer_id != actor_id:
                await self.lifecycle.commit()
                raise NotAuthorized(
                    "Order belongs to another customer",
                    order_id=str(order_id),
                )

        return await self.lifecycle.transition(
            order_id,
            DeliveryStatus.CANCELLED,
            actor,
            actor_id,
            reason=reason or "Cancelled",
        )

    # ========================================================================
    # Kitchen
    # ========================================================================

    async def start_preparing(
        self,
        order_id: uuid.UUID,
        actor: ActorRole = ActorRole.KITCHEN,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Order:
        return await self.lifecycle.transition(
            order_id, DeliveryStatus.PREPARING, actor, actor_id
        )

    async def mark_ready(
        self,
        order_id: uuid.UUID,
        actor: ActorRole = ActorRole.KITCHEN,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Order:
        return await self.lifecycle.transition(
            order_id, DeliveryStatus.READY_FOR_PICKUP, actor, actor_id
        )

    # ========================================================================
    # Courier
    # ========================================================================

    async def claim_order(self, order_id: uuid.UUID, courier_id: uuid.UUID) -> Order:
        return await self.claims.claim(order_id, courier_id)

    async def release_order(self, order_id: uuid.UUID, courier_id: uuid.UUID) -> Order:
        order = await self.claims.release(order_id, courier_id)
        if self.publishers is not None:
            await self.publishers.stop(order_id)
        return order

    async def start_delivery(self, order_id: uuid.UUID, courier_id: uuid.UUID) -> Order:
        """
        Mark a claimed order as on its way and start location publishing.

        Raises:
            NotAuthorized: If another courier holds the order
            InvalidTransition: If the order is not assigned
        """
        order = await retry_with_backoff(
            lambda: self.lifecycle.transition(
                order_id,
                DeliveryStatus.OUT_FOR_DELIVERY,
                ActorRole.COURIER,
                courier_id,
                reason="Picked up by courier",
            ),
            "start_delivery",
            order_id=str(order_id),
        )
        if self.publishers is not None:
            await self.publishers.start(courier_id, order_id)
        return order

    async def complete_delivery(
        self,
        order_id: uuid.UUID,
        courier_id: uuid.UUID,
        code: str,
        photo: Optional[PhotoUpload] = None,
        photo_ref: Optional[str] = None,
    ) -> Order:
        """Complete a delivery after verifying photo and code."""
        if self.verifier is None:
            raise RuntimeError("DeliveryService was created without a blob store")

        order = await self.verifier.complete(
            order_id,
            courier_id,
            code,
            photo=photo,
            photo_ref=photo_ref,
        )
        if self.publishers is not None:
            await self.publishers.stop(order_id)
        return order

    async def available_orders(self, limit: int = 50) -> Sequence[Order]:
        return await self.claims.available_orders(limit=limit)

    async def courier_orders(self, courier_id: uuid.UUID, limit: int = 50) -> Sequence[Order]:
        return await self.claims.courier_orders(courier_id, limit=limit)

    async def report_location(
        self,
        order_id: uuid.UUID,
        courier_id: uuid.UUID,
        fix: PositionFix,
    ) -> None:
        """
        Accept a position fix from the courier's device.

        The fix feeds the order's location publisher, which decides whether
        it becomes a published sample.

        Raises:
            NotAuthorized: If the courier does not hold the order
            PreconditionFailed: If the order has no active delivery
        """
        _, state = await self.lifecycle.load(order_id)
        await self.lifecycle.commit()

        if not state.status.has_courier():
            raise PreconditionFailed(
                "Order has no active delivery",
                user_message="Location sharing is only active during a delivery.",
                order_id=str(order_id),
                current_status=state.status.value,
            )
        if courier_of(state) != courier_id:
            raise NotAuthorized(
                "Order is not assigned to this courier",
                order_id=str(order_id),
            )

        if self.publishers is not None:
            await self.publishers.report(courier_id, order_id, fix)

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_order(
        self,
        order_id: uuid.UUID,
        actor: ActorRole,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Order:
        """
        Get an order visible to actor.

        Customers see their own orders; couriers see available orders and
        the ones they hold or delivered; kitchen and system see all.

        Raises:
            OrderNotFound: If the order does not exist or is not visible
        """
        order = await self.repository.get_order_or_raise(order_id)
        if not self._visible_to(order, actor, actor_id):
            raise OrderNotFound("Order not found", order_id=str(order_id))
        return order

    async def get_trackable_order(
        self,
        order_id: uuid.UUID,
        actor: ActorRole,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Order:
        """
        Get an order whose live tracking actor may watch.

        Couriers track only the orders they hold or delivered, even though
        every courier can see an order that is waiting for pickup.

        Raises:
            OrderNotFound: If the order does not exist or may not be tracked
        """
        order = await self.repository.get_order_or_raise(order_id)
        if actor == ActorRole.COURIER:
            allowed = actor_id is not None and actor_id in (
                order.assigned_courier_id,
                order.delivered_by_courier_id,
            )
        else:
            allowed = self._visible_to(order, actor, actor_id)
        if not allowed:
            raise OrderNotFound("Order not found", order_id=str(order_id))
        return order

    @staticmethod
    def _visible_to(order: Order, actor: ActorRole, actor_id: Optional[uuid.UUID]) -> bool:
        if actor in (ActorRole.KITCHEN, ActorRole.SYSTEM):
            return True
        if actor == ActorRole.CUSTOMER:
            return order.customer_id == actor_id
        if order.status_detailed == DeliveryStatus.READY_FOR_PICKUP:
            return True
        return actor_id is not None and actor_id in (
            order.assigned_courier_id,
            order.delivered_by_courier_id,
        )

    async def customer_orders(self, customer_id: uuid.UUID, limit: int = 50) -> Sequence[Order]:
        return await self.repository.list_customer_orders(customer_id, limit=limit)

    async def order_history(self, order_id: uuid.UUID) -> Sequence[OrderStatusHistory]:
        return await self.repository.get_status_history(order_id)
