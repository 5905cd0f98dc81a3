"""
Live tracking endpoints.

GET returns the current tracking view of an order. The WebSocket stream
pushes a fresh rendering of the view on every status change and location
sample; a client may send "resync" to force a re-read from the store after
reconnecting.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, Request, WebSocket, status

from delivery.api.deps import Actor, CurrentActor, Service
from delivery.api.websocket import MessageStream, authenticate_websocket, ensure_order_trackable
from delivery.core.logging import get_logger
from delivery.schemas.tracking import TrackingViewResponse
from delivery.services.orders.enums import ActorRole
from delivery.services.tracking.subscriber import (
    StoreTrackingLoader,
    TrackingSubscriber,
    TrackingView,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/tracking", tags=["tracking"])

RESYNC_MESSAGE = "resync"


def create_subscriber(state, order_id: UUID, actor: Actor) -> TrackingSubscriber:
    return TrackingSubscriber(
        order_id,
        loader=StoreTrackingLoader(state.session_factory),
        event_bus=state.event_bus,
        routing=getattr(state, "routing", None),
        viewer_courier_id=actor.id if actor.role == ActorRole.COURIER else None,
    )


@router.get(
    "/{order_id}",
    response_model=TrackingViewResponse,
    summary="Get live tracking view",
)
async def get_tracking_view(
    order_id: UUID,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TrackingViewResponse:
    await service.get_trackable_order(order_id, actor.role, actor.id)

    subscriber = create_subscriber(request.app.state, order_id, actor)
    try:
        view = await subscriber.start()
        return TrackingViewResponse.model_validate(view.to_dict())
    finally:
        await subscriber.close()


@router.websocket("/{order_id}/ws")
async def stream_tracking_view(
    websocket: WebSocket,
    order_id: UUID,
    token: Optional[str] = Query(None),
) -> None:
    actor = await authenticate_websocket(websocket, token)
    if actor is None:
        return

    state = websocket.app.state
    if not await ensure_order_trackable(state.session_factory, order_id, actor):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    stream = MessageStream(websocket)
    subscriber = create_subscriber(state, order_id, actor)

    async def on_view(view: TrackingView) -> None:
        stream.push(view.to_dict())

    async def on_client_message(text: str) -> None:
        if text.strip().lower() == RESYNC_MESSAGE:
            await subscriber.resync()

    subscriber.add_listener(on_view)
    logger.info(
        "Tracking stream opened",
        order_id=str(order_id),
        actor_id=str(actor.id),
    )
    try:
        await subscriber.start()
        await stream.run(on_client_message)
    finally:
        await subscriber.close()
        logger.info("Tracking stream closed", order_id=str(order_id))
