"""
Live tracking of one order for customer and courier-detail views.

A TrackingSubscriber follows an order's change feed and, while a courier
holds the order, that courier's location feed. It keeps a TrackingView with
the current status, the courier's last known position, a short trail of
recent positions and a route to the customer. The location subscription
only exists while the order is assigned or out for delivery; delivery,
cancellation and release drop it. Feed delivery is best-effort, so resync()
re-reads the store to recover from missed events.
"""

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery.core.config import get_settings
from delivery.core.logging import get_logger
from delivery.services.notifications.service import STATUS_MESSAGES
from delivery.services.orders.enums import DeliveryStatus
from delivery.services.orders.repository import OrderRepository
from delivery.services.routing.client import (
    Coordinate,
    Route,
    RoutingClient,
    straight_line_route,
)
from delivery.services.tracking.events import (
    Event,
    EventBus,
    LocationSampled,
    OrderChanged,
    Subscription,
    courier_location_topic,
    order_topic,
)
from delivery.services.tracking.repository import LocationRepository

logger = get_logger(__name__)

MAX_TRAIL_LENGTH = 10


@dataclass(frozen=True)
class TrackingSnapshot:
    """Authoritative state read from the store."""

    order_id: uuid.UUID
    status: DeliveryStatus
    courier_id: Optional[uuid.UUID] = None
    destination: Optional[Coordinate] = None
    latest: Optional[LocationSampled] = None


TrackingLoader = Callable[[uuid.UUID], Awaitable[TrackingSnapshot]]
ViewListener = Callable[["TrackingView"], Awaitable[None]]


@dataclass
class TrackingView:
    """What a live tracking screen renders."""

    order_id: uuid.UUID
    trail_length: int = MAX_TRAIL_LENGTH
    status: Optional[DeliveryStatus] = None
    courier_id: Optional[uuid.UUID] = None
    destination: Optional[Coordinate] = None
    position: Optional[Coordinate] = None
    position_sampled_at: Optional[datetime] = None
    route: Optional[Route] = None
    terminal_notice: Optional[str] = None
    trail: deque = field(init=False)

    def __post_init__(self) -> None:
        self.trail = deque(maxlen=min(self.trail_length, MAX_TRAIL_LENGTH))

    @property
    def tracking_active(self) -> bool:
        return self.status is not None and self.status.has_courier()

    def clear_position(self) -> None:
        self.position = None
        self.position_sampled_at = None
        self.route = None
        self.trail.clear()

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "status": self.status.value if self.status else None,
            "courier_id": str(self.courier_id) if self.courier_id else None,
            "tracking_active": self.tracking_active,
            "position": list(self.position) if self.position else None,
            "position_sampled_at": (
                self.position_sampled_at.isoformat() if self.position_sampled_at else None
            ),
            "trail": [list(point) for point in self.trail],
            "destination": list(self.destination) if self.destination else None,
            "route": (
                {
                    "points": [list(point) for point in self.route.points],
                    "source": self.route.source,
                }
                if self.route
                else None
            ),
            "terminal_notice": self.terminal_notice,
        }


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps read back from the store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def address_coordinate(address: Optional[dict[str, Any]]) -> Optional[Coordinate]:
    """Delivery destination from an address snapshot."""
    if not address:
        return None
    latitude, longitude = address.get("latitude"), address.get("longitude")
    if latitude is None or longitude is None:
        return None
    return (float(latitude), float(longitude))


class StoreTrackingLoader:
    """Reads tracking snapshots from the store, one session per read."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def __call__(self, order_id: uuid.UUID) -> TrackingSnapshot:
        """
        Raises:
            OrderNotFound: If the order does not exist
            StoreUnavailable: If the store fails
        """
        async with self.session_factory() as session:
            order = await OrderRepository(session).get_order_or_raise(order_id)
            latest = None
            if order.assigned_courier_id is not None:
                sample = await LocationRepository(session).latest_sample(
                    order.assigned_courier_id
                )
                if sample is not None:
                    latest = LocationSampled(
                        courier_id=sample.courier_id,
                        order_id=sample.order_id,
                        latitude=sample.latitude,
                        longitude=sample.longitude,
                        accuracy=sample.accuracy,
                        heading=sample.heading,
                        speed=sample.speed,
                        sampled_at=sample.sampled_at,
                    )

            return TrackingSnapshot(
                order_id=order.id,
                status=order.status_detailed,
                courier_id=order.assigned_courier_id,
                destination=address_coordinate(order.address),
                latest=latest,
            )


class TrackingSubscriber:
    """
    Subscription handle for one tracked order.

    A courier watching an order only sees location while that courier holds
    it; once another courier takes over, the view keeps the status and drops
    the position.

    Attributes:
        order_id: Order being tracked
        view: Current rendered state
        viewer_courier_id: Courier watching the order, None for customers and staff
    """

    def __init__(
        self,
        order_id: uuid.UUID,
        loader: TrackingLoader,
        event_bus: EventBus,
        routing: Optional[RoutingClient] = None,
        trail_length: Optional[int] = None,
        viewer_courier_id: Optional[uuid.UUID] = None,
    ):
        self.order_id = order_id
        self.viewer_courier_id = viewer_courier_id
        self.loader = loader
        self.event_bus = event_bus
        self.routing = routing
        self.view = TrackingView(
            order_id=order_id,
            trail_length=trail_length or get_settings().tracking_trail_length,
        )
        self._listeners: list[ViewListener] = []
        self._order_subscription: Optional[Subscription] = None
        self._location_subscription: Optional[Subscription] = None
        self._closed = False

    @property
    def following_courier(self) -> Optional[uuid.UUID]:
        """Courier whose location feed is currently subscribed."""
        if self._location_subscription is None or not self._location_subscription.active:
            return None
        return self.view.courier_id

    def add_listener(self, listener: ViewListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> TrackingView:
        """
        Subscribe to the order and load its current state.

        Raises:
            OrderNotFound: If the order does not exist
        """
        if self._order_subscription is None:
            self._closed = False
            self._order_subscription = await self.event_bus.subscribe(
                order_topic(self.order_id),
                self._on_order_event,
            )
        await self.resync()
        return self.view

    async def resync(self) -> TrackingView:
        """Re-read the store and rebuild the view."""
        snapshot = await self.loader(self.order_id)
        self.view.status = snapshot.status
        self.view.destination = snapshot.destination

        if snapshot.status.has_courier() and snapshot.courier_id is not None:
            await self._track_holder(snapshot.courier_id)
            if (
                snapshot.latest is not None
                and snapshot.latest.courier_id == self.following_courier
            ):
                self._record_position(snapshot.latest)
        else:
            await self._leave_active(snapshot.status)

        await self._refresh_route()
        await self._notify()

        logger.debug(
            "Tracking view resynced",
            order_id=str(self.order_id),
            status=snapshot.status.value,
        )
        return self.view

    async def close(self) -> None:
        """Release every subscription. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        await self._unfollow()
        if self._order_subscription is not None:
            await self._order_subscription.unsubscribe()
            self._order_subscription = None

        logger.debug("Tracking closed", order_id=str(self.order_id))

    # Feed handlers

    async def _on_order_event(self, event: Event) -> None:
        if not isinstance(event, OrderChanged) or event.order_id != self.order_id:
            return

        status = event.status_detailed
        self.view.status = status

        if status.has_courier() and event.assigned_courier_id is not None:
            await self._track_holder(event.assigned_courier_id)
        else:
            await self._leave_active(status)

        await self._notify()

    async def _on_location(self, event: Event) -> None:
        if not isinstance(event, LocationSampled):
            return
        if not self.view.tracking_active or event.courier_id != self.following_courier:
            return

        self._record_position(event)
        await self._refresh_route()
        await self._notify()

    # Helpers

    async def _track_holder(self, courier_id: uuid.UUID) -> None:
        self.view.terminal_notice = None
        if self.viewer_courier_id is not None and courier_id != self.viewer_courier_id:
            await self._unfollow()
            self.view.courier_id = None
            self.view.clear_position()
            return
        await self._follow(courier_id)

    async def _follow(self, courier_id: uuid.UUID) -> None:
        if self.following_courier == courier_id:
            return

        await self._unfollow()
        self.view.clear_position()
        self.view.courier_id = courier_id
        self._location_subscription = await self.event_bus.subscribe(
            courier_location_topic(courier_id),
            self._on_location,
        )
        logger.info(
            "Following courier location",
            order_id=str(self.order_id),
            courier_id=str(courier_id),
        )

    async def _unfollow(self) -> None:
        if self._location_subscription is not None:
            await self._location_subscription.unsubscribe()
            self._location_subscription = None

    async def _leave_active(self, status: DeliveryStatus) -> None:
        await self._unfollow()
        self.view.courier_id = None
        self.view.clear_position()
        if status.is_terminal():
            self.view.terminal_notice = STATUS_MESSAGES[status][0]
        else:
            self.view.terminal_notice = None

    def _record_position(self, sample: LocationSampled) -> None:
        sampled_at = as_utc(sample.sampled_at)
        if (
            self.view.position_sampled_at is not None
            and sampled_at <= self.view.position_sampled_at
        ):
            return

        point = (sample.latitude, sample.longitude)
        self.view.position = point
        self.view.position_sampled_at = sampled_at
        self.view.trail.append(point)

    async def _refresh_route(self) -> None:
        start, end = self.view.position, self.view.destination
        if start is None or end is None:
            self.view.route = None
            return
        if self.routing is None:
            self.view.route = straight_line_route(start, end)
            return
        self.view.route = await self.routing.route(start, end)

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            await listener(self.view)
