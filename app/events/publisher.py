"""HARVEST — Event Publisher.

Fire-and-forget broadcast of lifecycle events to live subscribers.

``publish`` never awaits and never raises: each subscriber owns a bounded
outbox drained by its own task, so a slow socket can only hurt itself.
Subscribers whose outbox is full or whose connection has closed are pruned,
either on the next publish or by the periodic sweep. Late subscribers get
no replay.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Set

from pydantic import BaseModel

from app.core.logging import get_logger

logger = get_logger("events.publisher")


class Subscriber(ABC):
    """A live event consumer with a bounded outbox."""

    def __init__(self, outbox_size: int = 256):
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @abstractmethod
    async def send(self, message: str) -> None:
        ...

    def offer(self, message: str) -> bool:
        """Queue a message without blocking. False means the subscriber is dead."""
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(message)
            return True
        except asyncio.QueueFull:
            logger.warning("Subscriber outbox full, dropping subscriber")
            self.close()
            return False

    async def pump(self) -> None:
        """Drain the outbox into ``send`` until closed."""
        while not self.closed:
            message = await self.outbox.get()
            try:
                await self.send(message)
            except Exception as e:
                logger.info(f"Subscriber send failed, closing: {e}")
                self.close()

    def close(self) -> None:
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()


class WebSocketSubscriber(Subscriber):
    """Adapts a FastAPI/Starlette WebSocket."""

    def __init__(self, websocket, outbox_size: int = 256):
        super().__init__(outbox_size)
        self.websocket = websocket

    async def send(self, message: str) -> None:
        await self.websocket.send_text(message)


class EventPublisher:
    """Broadcasts events to every currently-live subscriber."""

    def __init__(self, sweep_seconds: float = 30.0):
        self.sweep_seconds = sweep_seconds
        self._subscribers: Set[Subscriber] = set()
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> None:
        if not subscriber.closed:
            self._subscribers.add(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        subscriber.close()
        self._subscribers.discard(subscriber)

    def publish(self, event: BaseModel) -> int:
        """Offer ``event`` to all subscribers. Returns how many accepted it."""
        try:
            payload = event.model_dump(mode="json", by_alias=True)
            payload["timestamp"] = datetime.now(timezone.utc).isoformat()
            message = json.dumps(payload)
        except Exception as e:
            logger.error(f"Failed to serialize event: {e}")
            return 0

        delivered = 0
        for subscriber in list(self._subscribers):
            try:
                if subscriber.offer(message):
                    delivered += 1
                else:
                    self._subscribers.discard(subscriber)
            except Exception as e:
                logger.error(f"Failed to publish {payload.get('type')}: {e}")
                self._subscribers.discard(subscriber)
        return delivered

    def sweep(self) -> int:
        """Prune closed subscribers. Returns how many were removed."""
        dead = {s for s in self._subscribers if s.closed}
        self._subscribers -= dead
        return len(dead)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_seconds)
            removed = self.sweep()
            if removed:
                logger.info(f"Pruned {removed} dead subscribers")

    def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for subscriber in list(self._subscribers):
            self.unsubscribe(subscriber)
