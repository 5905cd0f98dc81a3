"""
Order store data access with conditional updates.

This module implements the OrderRepository class, the only code that reads
or writes order rows. Every lifecycle write is a single conditional UPDATE
whose WHERE clause pins the state the caller decided from (compare-and-swap),
so two clients racing on the same order cannot both succeed and no handler
relies on the row being unchanged since its last read. Database failures are
wrapped in StoreUnavailable with structured logging.
"""

import uuid
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from delivery.core.exceptions import OrderNotFound, StoreUnavailable
from delivery.core.logging import get_logger, log_performance
from delivery.database.base import utcnow
from delivery.database.models.delivery_photo import DeliveryPhoto
from delivery.database.models.order import Order, OrderStatusHistory
from delivery.services.orders.enums import (
    ACTIVE_DELIVERY_STATUSES,
    ActorRole,
    DeliveryStatus,
)
from delivery.services.orders.states import OrderState, courier_of, state_columns

logger = get_logger(__name__)


def expected_state_conditions(state: OrderState) -> list[Any]:
    """
    WHERE conditions that hold only while the row is still in state.

    Args:
        state: Lifecycle variant the caller read

    Returns:
        List of SQL conditions on the orders table
    """
    courier_id = courier_of(state)
    conditions = [Order.status_detailed == state.status]
    if courier_id is None:
        conditions.append(Order.assigned_courier_id.is_(None))
    else:
        conditions.append(Order.assigned_courier_id == courier_id)
    return conditions


class OrderRepository:
    """
    Repository for order store operations.

    Provides async methods for creating orders, conditional lifecycle
    updates, courier queues and delivery photo records. The repository
    flushes but never commits; the calling service owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize order repository.

        Args:
            session: Async database session
        """
        self.session = session

    async def create_order(
        self,
        customer_id: uuid.UUID,
        delivery_code: str,
        total_amount: Decimal,
        items: Sequence[dict[str, Any]],
        address: dict[str, Any],
        initial_state: OrderState,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Create an order in its initial lifecycle state.

        Args:
            customer_id: User placing the order
            delivery_code: Generated 5-digit delivery code
            total_amount: Order total from the cart service
            items: Line items from the cart service
            address: Delivery address snapshot
            initial_state: Lifecycle variant the order starts in
            notes: Optional customer notes

        Returns:
            Created order

        Raises:
            StoreUnavailable: If the insert fails
        """
        try:
            order = Order(
                customer_id=customer_id,
                delivery_code=delivery_code,
                total_amount=total_amount,
                items=list(items),
                address=dict(address),
                notes=notes,
                **state_columns(initial_state),
            )
            self.session.add(order)
            await self.session.flush()

            self.session.add(
                OrderStatusHistory(
                    order_id=order.id,
                    from_status=None,
                    to_status=initial_state.status,
                    actor_role=ActorRole.CUSTOMER,
                    actor_id=customer_id,
                    reason="Order created",
                )
            )
            await self.session.flush()

            logger.info(
                "Order created",
                order_id=str(order.id),
                customer_id=str(customer_id),
                status_detailed=initial_state.status.value,
                item_count=len(items),
            )
            return order

        except SQLAlchemyError as e:
            logger.error(
                "Order creation failed - database error",
                customer_id=str(customer_id),
                error=str(e),
            )
            raise StoreUnavailable(
                "Order creation failed due to database error",
                customer_id=str(customer_id),
                error=str(e),
            ) from e

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Get order by ID, always reading the stored row.

        Returns:
            Order if found, None otherwise

        Raises:
            StoreUnavailable: If the query fails
        """
        try:
            stmt = (
                select(Order)
                .where(Order.id == order_id)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error("Failed to fetch order", order_id=str(order_id), error=str(e))
            raise StoreUnavailable(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def get_order_or_raise(self, order_id: uuid.UUID) -> Order:
        """
        Get order by ID.

        Raises:
            OrderNotFound: If no order has this ID
            StoreUnavailable: If the query fails
        """
        order = await self.get_order(order_id)
        if order is None:
            raise OrderNotFound("Order not found", order_id=str(order_id))
        return order

    async def apply_transition(
        self,
        order_id: uuid.UUID,
        expected: OrderState,
        new_state: OrderState,
        actor_role: ActorRole,
        actor_id: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> Optional[Order]:
        """
        Atomically move an order from expected to new_state.

        The precondition check and the write are one UPDATE statement; if
        the row no longer matches expected, nothing is written.

        Args:
            order_id: Order identifier
            expected: Lifecycle variant the decision was made from
            new_state: Lifecycle variant to write
            actor_role: Role applying the transition
            actor_id: User applying the transition
            reason: Optional reason recorded in history

        Returns:
            The updated order, or None if the precondition did not hold

        Raises:
            StoreUnavailable: If the update fails
        """
        values = state_columns(new_state)
        values["updated_at"] = utcnow()

        stmt = (
            update(Order)
            .where(and_(Order.id == order_id, *expected_state_conditions(expected)))
            .values(**values)
            .returning(Order)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        try:
            with log_performance(
                logger,
                "conditional_order_update",
                order_id=str(order_id),
                target_status=new_state.status.value,
            ):
                result = await self.session.execute(stmt)
                order = result.scalar_one_or_none()

            if order is None:
                logger.info(
                    "Conditional update matched no rows",
                    order_id=str(order_id),
                    expected_status=expected.status.value,
                    target_status=new_state.status.value,
                )
                return None

            self.session.add(
                OrderStatusHistory(
                    order_id=order_id,
                    from_status=expected.status,
                    to_status=new_state.status,
                    actor_role=actor_role,
                    actor_id=actor_id,
                    reason=reason,
                )
            )
            await self.session.flush()

            logger.info(
                "Order transition applied",
                order_id=str(order_id),
                transition=f"{expected.status.value}->{new_state.status.value}",
                actor_role=actor_role.value,
            )
            return order

        except SQLAlchemyError as e:
            logger.error(
                "Failed to apply order transition",
                order_id=str(order_id),
                target_status=new_state.status.value,
                error=str(e),
            )
            raise StoreUnavailable(
                "Failed to update order",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def list_available(self, limit: int = 50) -> Sequence[Order]:
        """
        Orders ready for pickup with no courier, oldest first.

        Raises:
            StoreUnavailable: If the query fails
        """
        stmt = (
            select(Order)
            .where(
                Order.status_detailed == DeliveryStatus.READY_FOR_PICKUP,
                Order.assigned_courier_id.is_(None),
            )
            .order_by(Order.created_at.asc(), Order.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return await self._fetch_all(stmt, "available")

    async def list_courier_orders(
        self,
        courier_id: uuid.UUID,
        limit: int = 50,
    ) -> Sequence[Order]:
        """
        Active orders held by a courier, oldest first.

        Raises:
            StoreUnavailable: If the query fails
        """
        stmt = (
            select(Order)
            .where(
                Order.assigned_courier_id == courier_id,
                Order.status_detailed.in_(ACTIVE_DELIVERY_STATUSES),
            )
            .order_by(Order.created_at.asc(), Order.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return await self._fetch_all(stmt, "courier", courier_id=str(courier_id))

    async def list_customer_orders(
        self,
        customer_id: uuid.UUID,
        limit: int = 50,
    ) -> Sequence[Order]:
        """
        Orders placed by a customer, newest first.

        Raises:
            StoreUnavailable: If the query fails
        """
        stmt = (
            select(Order)
            .where(Order.customer_id == customer_id)
            .order_by(Order.created_at.desc())
            .limit(limit)
        )
        return await self._fetch_all(stmt, "customer", customer_id=str(customer_id))

    async def get_status_history(
        self,
        order_id: uuid.UUID,
    ) -> Sequence[OrderStatusHistory]:
        """Transitions applied to an order, oldest first."""
        stmt = (
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at.asc())
        )
        return await self._fetch_all(stmt, "history", order_id=str(order_id))

    async def _fetch_all(self, stmt: Any, queue: str, **context: Any) -> Sequence[Any]:
        try:
            result = await self.session.execute(stmt)
            rows = result.scalars().all()
            logger.debug("Orders fetched", queue=queue, count=len(rows), **context)
            return rows
        except SQLAlchemyError as e:
            logger.error("Failed to fetch orders", queue=queue, error=str(e), **context)
            raise StoreUnavailable(
                "Failed to fetch orders",
                queue=queue,
                error=str(e),
                **context,
            ) from e

    # Delivery photos

    async def get_delivery_photo(self, order_id: uuid.UUID) -> Optional[DeliveryPhoto]:
        """
        Photo record already stored for an order, if any.

        Raises:
            StoreUnavailable: If the query fails
        """
        try:
            result = await self.session.execute(
                select(DeliveryPhoto).where(DeliveryPhoto.order_id == order_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreUnavailable(
                "Failed to fetch delivery photo",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def save_delivery_photo(
        self,
        order_id: uuid.UUID,
        courier_id: uuid.UUID,
        storage_path: str,
    ) -> DeliveryPhoto:
        """
        Record the evidence photo for an order exactly once.

        If a record for the order already exists (a concurrent or earlier
        attempt stored one), that record is returned instead. A conflicting
        insert rolls the session back, so callers must not hold uncommitted
        work.

        Raises:
            StoreUnavailable: If the insert fails for another reason
        """
        existing = await self.get_delivery_photo(order_id)
        if existing is not None:
            return existing

        try:
            photo = DeliveryPhoto(
                order_id=order_id,
                courier_id=courier_id,
                storage_path=storage_path,
            )
            self.session.add(photo)
            await self.session.flush()

            logger.info(
                "Delivery photo recorded",
                order_id=str(order_id),
                courier_id=str(courier_id),
                storage_path=storage_path,
            )
            return photo

        except IntegrityError:
            await self.session.rollback()
            logger.info("Delivery photo already recorded", order_id=str(order_id))
            existing = await self.get_delivery_photo(order_id)
            if existing is None:
                raise StoreUnavailable(
                    "Delivery photo record conflicted but could not be read",
                    order_id=str(order_id),
                )
            return existing
        except SQLAlchemyError as e:
            logger.error(
                "Failed to record delivery photo",
                order_id=str(order_id),
                error=str(e),
            )
            raise StoreUnavailable(
                "Failed to record delivery photo",
                order_id=str(order_id),
                error=str(e),
            ) from e
