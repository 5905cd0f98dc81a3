"""
Courier location publisher.

A LocationPublisher is an owned handle for one courier's active delivery.
While running it polls a position source and publishes a sample whenever
the sample interval has elapsed or the courier has moved far enough since
the last published sample, whichever happens first. Samples are appended to
the location store and announced on the courier's feed topic. A sample that
cannot be stored or announced is logged and dropped; subscribers treat the
last known sample as current until a newer one arrives.
"""

import asyncio
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from delivery.core.config import get_settings
from delivery.core.exceptions import DeliveryError
from delivery.core.logging import get_logger
from delivery.database.base import utcnow
from delivery.services.tracking.events import (
    EventBus,
    LocationSampled,
    courier_location_topic,
)

logger = get_logger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0


@dataclass(frozen=True)
class PositionFix:
    """A device position reading."""

    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None


class PositionSource(Protocol):
    async def current_position(self) -> Optional[PositionFix]:
        """Latest fix, or None when no fix is available."""
        ...


class LocationSink(Protocol):
    async def append(self, sample: LocationSampled) -> None:
        ...


class ReportedPositionSource:
    """Position source fed by fixes the courier's device reports."""

    def __init__(self) -> None:
        self._latest: Optional[PositionFix] = None

    def update(self, fix: PositionFix) -> None:
        self._latest = fix

    async def current_position(self) -> Optional[PositionFix]:
        return self._latest


def haversine_meters(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
) -> float:
    """Great-circle distance between two points in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(a))


class LocationPublisher:
    """
    Dual-trigger location sampling loop for one courier.

    Attributes:
        courier_id: Courier whose position is published
        order_id: Active order the samples belong to
        published: Number of samples stored
        dropped: Number of samples lost to store failures
    """

    def __init__(
        self,
        courier_id: uuid.UUID,
        position_source: PositionSource,
        store: LocationSink,
        event_bus: EventBus,
        order_id: Optional[uuid.UUID] = None,
        interval_seconds: Optional[float] = None,
        distance_meters: Optional[float] = None,
        poll_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.courier_id = courier_id
        self.order_id = order_id
        self.position_source = position_source
        self.store = store
        self.event_bus = event_bus
        self.interval_seconds = interval_seconds or settings.sample_interval_seconds
        self.distance_meters = distance_meters or settings.sample_distance_meters
        self.poll_seconds = poll_seconds or settings.position_poll_seconds
        self.clock = clock
        self.monotonic = monotonic

        self.published = 0
        self.dropped = 0
        self._last_fix: Optional[PositionFix] = None
        self._last_published_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sampling loop. Does nothing if already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(
            "Location publishing started",
            courier_id=str(self.courier_id),
            order_id=str(self.order_id) if self.order_id else None,
            interval_seconds=self.interval_seconds,
            distance_meters=self.distance_meters,
        )

    async def stop(self) -> None:
        """Stop the sampling loop. Safe to call when not running."""
        task, self._task = self._task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        logger.info(
            "Location publishing stopped",
            courier_id=str(self.courier_id),
            order_id=str(self.order_id) if self.order_id else None,
            published=self.published,
            dropped=self.dropped,
        )

    async def _run(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.poll_seconds)

    def should_publish(self, fix: PositionFix, now: float) -> bool:
        """Dual trigger: interval elapsed or distance moved."""
        if self._last_fix is None or self._last_published_at is None:
            return True
        if now - self._last_published_at >= self.interval_seconds:
            return True
        moved = haversine_meters(
            self._last_fix.latitude,
            self._last_fix.longitude,
            fix.latitude,
            fix.longitude,
        )
        return moved >= self.distance_meters

    async def tick(self) -> Optional[LocationSampled]:
        """
        Poll the position source once and publish if a trigger fired.

        Returns:
            The published sample, or None if nothing was published
        """
        try:
            fix = await self.position_source.current_position()
        except Exception as e:
            logger.warning(
                "Position source failed",
                courier_id=str(self.courier_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if fix is None:
            return None

        now = self.monotonic()
        if not self.should_publish(fix, now):
            return None

        sample = LocationSampled(
            courier_id=self.courier_id,
            order_id=self.order_id,
            latitude=fix.latitude,
            longitude=fix.longitude,
            accuracy=fix.accuracy,
            heading=fix.heading,
            speed=fix.speed,
            sampled_at=self.clock(),
        )

        try:
            await self.store.append(sample)
        except DeliveryError as e:
            self.dropped += 1
            logger.warning(
                "Location sample dropped",
                courier_id=str(self.courier_id),
                error=str(e),
                dropped=self.dropped,
            )
            return None

        self._last_fix = fix
        self._last_published_at = now
        self.published += 1

        try:
            await self.event_bus.publish(courier_location_topic(self.courier_id), sample)
        except DeliveryError as e:
            logger.warning(
                "Location sample stored but not announced",
                courier_id=str(self.courier_id),
                error=str(e),
            )

        return sample


class PublisherRegistry:
    """
    Running publishers keyed by order.

    Owns the handles the service layer starts when a delivery begins and
    stops on completion, release or cancellation.
    """

    def __init__(self, store: LocationSink, event_bus: EventBus, **publisher_options):
        self.store = store
        self.event_bus = event_bus
        self.publisher_options = publisher_options
        self._publishers: dict[uuid.UUID, LocationPublisher] = {}
        self._sources: dict[uuid.UUID, ReportedPositionSource] = {}

    def get(self, order_id: uuid.UUID) -> Optional[LocationPublisher]:
        return self._publishers.get(order_id)

    async def start(
        self,
        courier_id: uuid.UUID,
        order_id: uuid.UUID,
        position_source: Optional[PositionSource] = None,
    ) -> LocationPublisher:
        """Start publishing for an order, reusing a running publisher."""
        publisher = self._publishers.get(order_id)
        if publisher is not None and publisher.courier_id == courier_id:
            await publisher.start()
            return publisher
        if publisher is not None:
            await self.stop(order_id)

        if position_source is None:
            source = ReportedPositionSource()
            self._sources[order_id] = source
            position_source = source

        publisher = LocationPublisher(
            courier_id=courier_id,
            order_id=order_id,
            position_source=position_source,
            store=self.store,
            event_bus=self.event_bus,
            **self.publisher_options,
        )
        self._publishers[order_id] = publisher
        await publisher.start()
        return publisher

    async def report(
        self,
        courier_id: uuid.UUID,
        order_id: uuid.UUID,
        fix: PositionFix,
    ) -> LocationPublisher:
        """Feed a device-reported fix to the order's publisher."""
        publisher = await self.start(courier_id, order_id)
        source = self._sources.get(order_id)
        if source is not None:
            source.update(fix)
        return publisher

    async def stop(self, order_id: uuid.UUID) -> None:
        """Stop publishing for an order. Safe when none is running."""
        publisher = self._publishers.pop(order_id, None)
        self._sources.pop(order_id, None)
        if publisher is not None:
            await publisher.stop()

    async def stop_all(self) -> None:
        for order_id in list(self._publishers):
            await self.stop(order_id)
