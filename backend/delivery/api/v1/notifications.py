"""
Status notification stream.

Each user receives the status notifications addressed to them over a
WebSocket for as long as the connection stays open.
"""

from typing import Optional

from fastapi import APIRouter, Query, WebSocket

from delivery.api.websocket import MessageStream, authenticate_websocket
from delivery.core.logging import get_logger
from delivery.services.tracking.events import Event, StatusNotification, notifications_topic

logger = get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.websocket("/ws")
async def stream_notifications(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
) -> None:
    actor = await authenticate_websocket(websocket, token)
    if actor is None:
        return

    await websocket.accept()
    stream = MessageStream(websocket)

    async def on_event(event: Event) -> None:
        if isinstance(event, StatusNotification):
            stream.push(event.model_dump(mode="json"))

    subscription = await websocket.app.state.event_bus.subscribe(
        notifications_topic(actor.id),
        on_event,
    )
    logger.info("Notification stream opened", user_id=str(actor.id))
    try:
        await stream.run()
    finally:
        await subscription.unsubscribe()
        logger.info("Notification stream closed", user_id=str(actor.id))
