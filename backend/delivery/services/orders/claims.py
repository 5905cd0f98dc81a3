"""
Claim coordination between competing couriers.

This module implements the ClaimCoordinator class. A claim is one
conditional UPDATE that only matches an order still ready for pickup with
no courier, so of any number of couriers racing for the same order exactly
one write succeeds. The winner gets the post-claim row straight from the
UPDATE; every other courier gets AlreadyTaken and should refresh its list.
"""

import uuid
from typing import Optional, Sequence

from delivery.core.config import get_settings
from delivery.core.exceptions import (
    AlreadyTaken,
    DeliveryError,
    OperationTimeout,
    OrderNotFound,
)
from delivery.core.logging import get_logger
from delivery.core.retry import retry_with_backoff, with_timeout
from delivery.database.models.order import Order
from delivery.services.orders.enums import ActorRole, DeliveryStatus
from delivery.services.orders.lifecycle import OrderLifecycle
from delivery.services.orders.states import (
    AssignedToDriver,
    ReadyForPickup,
    courier_of,
    state_from_order,
)

logger = get_logger(__name__)


class ClaimCoordinator:
    """
    Atomic claim and release of orders by couriers.

    Attributes:
        lifecycle: Transition executor for the request's session
        claim_timeout: Client-side deadline for one claim attempt
    """

    def __init__(
        self,
        lifecycle: OrderLifecycle,
        claim_timeout: Optional[float] = None,
    ):
        self.lifecycle = lifecycle
        self.repository = lifecycle.repository
        self.state_machine = lifecycle.state_machine
        self.claim_timeout = claim_timeout or get_settings().claim_timeout_seconds

    async def claim(self, order_id: uuid.UUID, courier_id: uuid.UUID) -> Order:
        """
        Assign an available order to a courier.

        Args:
            order_id: Order to claim
            courier_id: Courier claiming it

        Returns:
            The order as stored after the claim

        Raises:
            AlreadyTaken: If the order is no longer available
            OrderNotFound: If the order does not exist
            OperationTimeout: If the claim did not finish in time
            StoreUnavailable: If the store kept failing
        """
        return await retry_with_backoff(
            lambda: self._attempt_claim(order_id, courier_id),
            "claim",
            order_id=str(order_id),
            courier_id=str(courier_id),
        )

    async def _attempt_claim(self, order_id: uuid.UUID, courier_id: uuid.UUID) -> Order:
        try:
            return await with_timeout(
                self._claim_once(order_id, courier_id),
                self.claim_timeout,
                "claim",
                order_id=str(order_id),
            )
        except OperationTimeout:
            await self.lifecycle.rollback()
            raise

    async def _claim_once(self, order_id: uuid.UUID, courier_id: uuid.UUID) -> Order:
        expected = ReadyForPickup()
        new_state = self.state_machine.next_state(
            expected,
            DeliveryStatus.ASSIGNED_TO_DRIVER,
            ActorRole.COURIER,
            courier_id,
        )

        try:
            updated = await self.repository.apply_transition(
                order_id,
                expected,
                new_state,
                actor_role=ActorRole.COURIER,
                actor_id=courier_id,
                reason="Claimed by courier",
            )
        except DeliveryError:
            await self.lifecycle.rollback()
            raise

        if updated is None:
            await self.lifecycle.rollback()
            return await self._claim_rejected(order_id, courier_id)

        await self.lifecycle.commit()
        logger.info(
            "Order claimed",
            order_id=str(order_id),
            courier_id=str(courier_id),
        )
        await self.lifecycle.announce(updated, previous=DeliveryStatus.READY_FOR_PICKUP)
        return updated

    async def _claim_rejected(self, order_id: uuid.UUID, courier_id: uuid.UUID) -> Order:
        order = await self.repository.get_order(order_id)
        await self.lifecycle.commit()

        if order is None:
            raise OrderNotFound("Order not found", order_id=str(order_id))

        state = state_from_order(order)
        if isinstance(state, AssignedToDriver) and state.courier_id == courier_id:
            # An earlier attempt by this courier already won
            logger.info(
                "Claim already held by courier",
                order_id=str(order_id),
                courier_id=str(courier_id),
            )
            return order

        logger.info(
            "Claim lost",
            order_id=str(order_id),
            courier_id=str(courier_id),
            current_status=state.status.value,
        )
        raise AlreadyTaken(
            "Order is no longer available",
            order_id=str(order_id),
            current_status=state.status.value,
        )

    async def release(self, order_id: uuid.UUID, courier_id: uuid.UUID) -> Order:
        """
        Return a claimed order to the available pool.

        Releasing an order that is already back in the pool is a no-op that
        returns the current snapshot.

        Raises:
            NotAuthorized: If another courier holds the order
            InvalidTransition: If the order is delivered, cancelled or not
                yet ready
            OrderNotFound: If the order does not exist
            StoreUnavailable: If the store kept failing
        """
        return await retry_with_backoff(
            lambda: self._release_once(order_id, courier_id),
            "release",
            order_id=str(order_id),
            courier_id=str(courier_id),
        )

    async def _release_once(self, order_id: uuid.UUID, courier_id: uuid.UUID) -> Order:
        order, state = await self.lifecycle.load(order_id)

        if isinstance(state, ReadyForPickup):
            await self.lifecycle.commit()
            logger.info(
                "Release of an available order ignored",
                order_id=str(order_id),
                courier_id=str(courier_id),
            )
            return order

        released = await self.lifecycle.transition(
            order_id,
            DeliveryStatus.READY_FOR_PICKUP,
            ActorRole.COURIER,
            courier_id,
            reason="Released by courier",
        )
        logger.info(
            "Order released",
            order_id=str(order_id),
            courier_id=str(courier_id),
            previous_courier_id=str(courier_of(state)) if courier_of(state) else None,
        )
        return released

    async def available_orders(self, limit: int = 50) -> Sequence[Order]:
        """Orders ready for pickup with no courier, oldest first."""
        return await retry_with_backoff(
            lambda: self.repository.list_available(limit=limit),
            "available_orders",
        )

    async def courier_orders(self, courier_id: uuid.UUID, limit: int = 50) -> Sequence[Order]:
        """Orders the courier currently holds, oldest first."""
        return await retry_with_backoff(
            lambda: self.repository.list_courier_orders(courier_id, limit=limit),
            "courier_orders",
            courier_id=str(courier_id),
        )
