"""HARVEST — Live Event Stream (WebSocket)."""

import asyncio
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from app.core.logging import get_logger
from app.events.publisher import WebSocketSubscriber

logger = get_logger("api.events")

router = APIRouter(tags=["Events"])


async def _receive(websocket: WebSocket, subscriber: WebSocketSubscriber) -> None:
    while True:
        message = await websocket.receive_text()
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and data.get("type") == "ping":
            subscriber.offer(json.dumps({"type": "pong"}))


@router.websocket("/api/events")
async def event_stream(websocket: WebSocket):
    """Push lifecycle events to the client. ``{"type": "ping"}`` gets a pong.

    The socket is closed from this side once the subscriber is dropped
    (full outbox or failed send).
    """
    context = websocket.app.state.context
    await websocket.accept()

    subscriber = WebSocketSubscriber(websocket, outbox_size=context.settings.event_outbox_size)
    context.publisher.subscribe(subscriber)
    pump = asyncio.create_task(subscriber.pump())
    receiver = asyncio.create_task(_receive(websocket, subscriber))
    dropped = asyncio.create_task(subscriber.wait_closed())
    try:
        done, _ = await asyncio.wait({receiver, dropped}, return_when=asyncio.FIRST_COMPLETED)
        if receiver in done:
            receiver.result()
        else:
            receiver.cancel()
            logger.info("Event subscriber dropped, closing socket")
            if websocket.client_state == WebSocketState.CONNECTED:
                try:
                    await websocket.close(code=1011)
                except (RuntimeError, OSError) as e:
                    logger.info(f"Event socket already gone: {e}")
    except WebSocketDisconnect:
        logger.info("Event subscriber disconnected")
    finally:
        context.publisher.unsubscribe(subscriber)
        for task in (pump, receiver, dropped):
            task.cancel()
