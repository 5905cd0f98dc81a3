"""
Order status notifications.

Every applied transition emits a logical (user_id, order_id, new_status)
event. The emitter attaches the title and body shown to the customer and
hands the notification to a sink; push delivery mechanics live outside this
service. Emission never fails a transition: sink errors are logged.
"""

import uuid
from typing import Protocol

from delivery.core.exceptions import DeliveryError
from delivery.core.logging import get_logger
from delivery.services.orders.enums import DeliveryStatus
from delivery.services.tracking.events import (
    EventBus,
    StatusNotification,
    notifications_topic,
)

logger = get_logger(__name__)

STATUS_MESSAGES: dict[DeliveryStatus, tuple[str, str]] = {
    DeliveryStatus.PENDING: (
        "Order received",
        "We received your order and will start on it shortly.",
    ),
    DeliveryStatus.PREPARING: (
        "Preparing your order",
        "The kitchen is preparing your order.",
    ),
    DeliveryStatus.READY_FOR_PICKUP: (
        "Ready for pickup",
        "Your order is ready and waiting for a courier.",
    ),
    DeliveryStatus.ASSIGNED_TO_DRIVER: (
        "Courier assigned",
        "A courier accepted your order and is heading to pick it up.",
    ),
    DeliveryStatus.OUT_FOR_DELIVERY: (
        "On the way!",
        "Your order is on its way. Have your delivery code ready.",
    ),
    DeliveryStatus.DELIVERED: (
        "Delivered! Enjoy your meal",
        "Your order has been delivered. Enjoy!",
    ),
    DeliveryStatus.CANCELLED: (
        "Order cancelled",
        "Your order has been cancelled.",
    ),
}


def build_notification(
    user_id: uuid.UUID,
    order_id: uuid.UUID,
    new_status: DeliveryStatus,
) -> StatusNotification:
    title, body = STATUS_MESSAGES[new_status]
    return StatusNotification(
        user_id=user_id,
        order_id=order_id,
        new_status=new_status,
        title=title,
        body=body,
    )


class NotificationSink(Protocol):
    async def deliver(self, notification: StatusNotification) -> None:
        ...


class FeedNotificationSink:
    """Publishes notifications on the user's feed topic."""

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus

    async def deliver(self, notification: StatusNotification) -> None:
        await self.event_bus.publish(notifications_topic(notification.user_id), notification)


class NotificationEmitter:
    """Builds status notifications and hands them to a sink."""

    def __init__(self, sink: NotificationSink):
        self.sink = sink

    async def emit(
        self,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
        new_status: DeliveryStatus,
    ) -> StatusNotification:
        """
        Emit the notification for an order's new status.

        Returns:
            The notification that was handed to the sink
        """
        notification = build_notification(user_id, order_id, new_status)
        try:
            await self.sink.deliver(notification)
            logger.info(
                "Status notification emitted",
                user_id=str(user_id),
                order_id=str(order_id),
                new_status=new_status.value,
            )
        except DeliveryError as e:
            logger.warning(
                "Status notification not delivered",
                user_id=str(user_id),
                order_id=str(order_id),
                new_status=new_status.value,
                error=str(e),
            )
        return notification
