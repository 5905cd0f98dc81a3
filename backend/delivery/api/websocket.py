"""
WebSocket plumbing shared by the live tracking and notification streams.

Feed handlers only enqueue messages; a sender task owns the socket so a slow
or dead client never blocks whoever published the event.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from fastapi import WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery.api.deps import Actor, InvalidToken, decode_actor_token
from delivery.core.exceptions import OrderNotFound
from delivery.core.logging import get_logger
from delivery.services.orders.service import DeliveryService

logger = get_logger(__name__)

MAX_PENDING_MESSAGES = 100

ClientMessageHandler = Callable[[str], Awaitable[None]]


async def authenticate_websocket(websocket: WebSocket, token: Optional[str]) -> Optional[Actor]:
    """Resolve the actor from the token query parameter, closing on failure."""
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None
    try:
        return decode_actor_token(token)
    except InvalidToken:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None


async def ensure_order_trackable(
    session_factory: async_sessionmaker[AsyncSession],
    order_id: UUID,
    actor: Actor,
) -> bool:
    """Check that actor may watch the live tracking of order_id."""
    async with session_factory() as session:
        try:
            await DeliveryService(session).get_trackable_order(order_id, actor.role, actor.id)
        except OrderNotFound:
            return False
    return True


class MessageStream:
    """
    Bounded outbound queue for one WebSocket connection.

    When the client falls behind the oldest pending message is dropped;
    every message is a full state rendering, so the newest one wins.
    """

    def __init__(self, websocket: WebSocket, max_pending: int = MAX_PENDING_MESSAGES):
        self.websocket = websocket
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max_pending)

    def push(self, message: dict[str, Any]) -> None:
        if self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(message)

    async def _send_loop(self) -> None:
        while True:
            message = await self.queue.get()
            await self.websocket.send_json(message)

    async def _receive_loop(self, on_message: Optional[ClientMessageHandler]) -> None:
        while True:
            text = await self.websocket.receive_text()
            if on_message is not None:
                await on_message(text)

    async def run(self, on_message: Optional[ClientMessageHandler] = None) -> None:
        """Pump queued messages until the client disconnects."""
        sender = asyncio.create_task(self._send_loop())
        receiver = asyncio.create_task(self._receive_loop(on_message))
        try:
            done, _ = await asyncio.wait(
                {sender, receiver},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, WebSocketDisconnect):
                    logger.warning(
                        "WebSocket stream failed",
                        error=str(error),
                        error_type=type(error).__name__,
                    )
        finally:
            for task in (sender, receiver):
                task.cancel()
            await asyncio.gather(sender, receiver, return_exceptions=True)
