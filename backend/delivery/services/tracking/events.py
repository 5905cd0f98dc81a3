"""
Real-time change feed for order updates and courier locations.

This module defines the typed events carried on the feed and the EventBus
abstraction consumers subscribe through. Delivery is best-effort and
at-most-once: a subscriber that misses events re-fetches current state on
reconnect. Two transports are provided, an in-process bus for single-node
deployments and tests, and a Redis pub/sub bus for multi-process
deployments.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Annotated, Awaitable, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from delivery.core.config import get_settings
from delivery.core.exceptions import FeedUnavailable
from delivery.core.logging import get_logger
from delivery.database.base import utcnow
from delivery.services.orders.enums import DeliveryStatus

logger = get_logger(__name__)

AVAILABLE_ORDERS_TOPIC = "orders:available"


def order_topic(order_id: uuid.UUID) -> str:
    return f"orders:{order_id}"


def courier_location_topic(courier_id: uuid.UUID) -> str:
    return f"couriers:{courier_id}:location"


def notifications_topic(user_id: uuid.UUID) -> str:
    return f"notifications:{user_id}"


# ============================================================================
# Events
# ============================================================================


class FeedEvent(BaseModel):
    model_config = ConfigDict(frozen=True)


class OrderChanged(FeedEvent):
    """An order's lifecycle fields changed."""

    type: Literal["order_changed"] = "order_changed"
    order_id: uuid.UUID
    status_detailed: DeliveryStatus
    previous_status: Optional[DeliveryStatus] = None
    assigned_courier_id: Optional[uuid.UUID] = None
    changed_at: datetime = Field(default_factory=utcnow)


class LocationSampled(FeedEvent):
    """A courier published a new position sample."""

    type: Literal["location_sampled"] = "location_sampled"
    courier_id: uuid.UUID
    order_id: Optional[uuid.UUID] = None
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    sampled_at: datetime


class StatusNotification(FeedEvent):
    """Logical notification for a user about an order's new status."""

    type: Literal["status_notification"] = "status_notification"
    user_id: uuid.UUID
    order_id: uuid.UUID
    new_status: DeliveryStatus
    title: str
    body: str


Event = Annotated[
    Union[OrderChanged, LocationSampled, StatusNotification],
    Field(discriminator="type"),
]

event_adapter: TypeAdapter[Event] = TypeAdapter(Event)

EventHandler = Callable[[Event], Awaitable[None]]


def encode_event(event: FeedEvent) -> str:
    return event.model_dump_json()


def decode_event(payload: Union[str, bytes]) -> Event:
    """
    Decode a feed payload.

    Raises:
        ValidationError: If the payload is not a known event
    """
    return event_adapter.validate_json(payload)


# ============================================================================
# Bus abstraction
# ============================================================================


class Subscription:
    """
    Handle returned by EventBus.subscribe.

    unsubscribe() is idempotent; after it returns the handler receives no
    further events.
    """

    def __init__(self, bus: "EventBus", topic: str, handler: EventHandler):
        self.id = uuid.uuid4()
        self.bus = bus
        self.topic = topic
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        await self.bus._remove(self)


class EventBus(ABC):
    """Publish/subscribe interface keyed by topic."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, dict[uuid.UUID, Subscription]] = {}

    @abstractmethod
    async def publish(self, topic: str, event: FeedEvent) -> None:
        """
        Publish an event to every current subscriber of topic.

        Raises:
            FeedUnavailable: If the transport fails
        """

    async def subscribe(self, topic: str, handler: EventHandler) -> Subscription:
        """
        Register handler for events on topic.

        Returns:
            Subscription handle used to unsubscribe
        """
        subscription = Subscription(self, topic, handler)
        first = topic not in self._subscriptions
        self._subscriptions.setdefault(topic, {})[subscription.id] = subscription
        if first:
            await self._on_first_subscriber(topic)

        logger.debug("Feed subscription added", topic=topic)
        return subscription

    async def _remove(self, subscription: Subscription) -> None:
        handlers = self._subscriptions.get(subscription.topic)
        if not handlers:
            return
        handlers.pop(subscription.id, None)
        if not handlers:
            del self._subscriptions[subscription.topic]
            await self._on_last_unsubscribed(subscription.topic)

        logger.debug("Feed subscription removed", topic=subscription.topic)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, {}))

    async def _on_first_subscriber(self, topic: str) -> None:
        pass

    async def _on_last_unsubscribed(self, topic: str) -> None:
        pass

    async def _dispatch(self, topic: str, event: Event) -> None:
        for subscription in list(self._subscriptions.get(topic, {}).values()):
            if not subscription.active:
                continue
            try:
                await subscription.handler(event)
            except Exception as e:
                logger.error(
                    "Feed handler failed",
                    topic=topic,
                    event_type=event.type,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    async def close(self) -> None:
        self._subscriptions.clear()


class InMemoryEventBus(EventBus):
    """
    In-process bus. Handlers run in publish order before publish returns.
    """

    async def publish(self, topic: str, event: FeedEvent) -> None:
        await self._dispatch(topic, event)


class RedisEventBus(EventBus):
    """
    Redis pub/sub bus.

    Events are JSON encoded on the channel named by the topic. A single
    reader task per bus receives messages for every subscribed channel and
    dispatches them to local handlers.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[Redis] = None,
        poll_timeout: float = 1.0,
    ):
        super().__init__()
        self._client = client or Redis.from_url(
            url or get_settings().redis_url,
            decode_responses=True,
        )
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        self._poll_timeout = poll_timeout
        self._reader: Optional[asyncio.Task] = None

    async def publish(self, topic: str, event: FeedEvent) -> None:
        try:
            await self._client.publish(topic, encode_event(event))
        except RedisError as e:
            logger.error("Failed to publish feed event", topic=topic, error=str(e))
            raise FeedUnavailable(
                "Failed to publish feed event",
                topic=topic,
                error=str(e),
            ) from e

    async def _on_first_subscriber(self, topic: str) -> None:
        try:
            await self._pubsub.subscribe(topic)
        except RedisError as e:
            self._subscriptions.pop(topic, None)
            raise FeedUnavailable(
                "Failed to subscribe to feed",
                topic=topic,
                error=str(e),
            ) from e

        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop())

    async def _on_last_unsubscribed(self, topic: str) -> None:
        try:
            await self._pubsub.unsubscribe(topic)
        except RedisError as e:
            logger.warning("Failed to unsubscribe from feed", topic=topic, error=str(e))

    async def _read_loop(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self._poll_timeout,
                )
            except RedisError as e:
                logger.error("Feed reader lost connection", error=str(e))
                await asyncio.sleep(self._poll_timeout)
                continue

            if message is None or message.get("type") != "message":
                continue

            topic = message["channel"]
            try:
                event = decode_event(message["data"])
            except ValidationError as e:
                logger.warning("Dropping undecodable feed message", topic=topic, error=str(e))
                continue

            await self._dispatch(topic, event)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

        await super().close()
        await self._pubsub.aclose()
        await self._client.aclose()
        logger.info("Redis event bus closed")


def create_event_bus() -> EventBus:
    """Build the bus selected by settings."""
    settings = get_settings()
    if settings.event_bus_backend == "redis":
        return RedisEventBus(settings.redis_url)
    return InMemoryEventBus()
