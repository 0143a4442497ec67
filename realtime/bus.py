from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass


logger = logging.getLogger(__name__)

NEW_EVENT = "new_event"
STATUS_UPDATE = "status_update"


@dataclass(frozen=True)
class Message:
    type: str
    data: dict

    def to_json(self) -> str:
        return json.dumps(
            {"type": self.type, "data": self.data},
            separators=(",", ":"),
            ensure_ascii=False,
        )


class Broadcaster:
    """Best-effort fan-out to every live subscription.

    Each subscriber owns a bounded queue. Publishing never waits on a
    subscriber: a full queue loses its oldest message instead.
    """

    def __init__(self, queue_size: int = 200) -> None:
        self._lock = asyncio.Lock()
        self._subscribers: set[asyncio.Queue[Message]] = set()
        self._queue_size = queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def subscribe(self) -> asyncio.Queue[Message]:
        queue: asyncio.Queue[Message] = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._subscribers.add(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[Message]) -> None:
        async with self._lock:
            self._subscribers.discard(queue)

    async def publish(self, message: Message) -> int:
        async with self._lock:
            subscribers = list(self._subscribers)
        for queue in subscribers:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                _ = queue.get_nowait()
                queue.put_nowait(message)
                logger.debug("subscriber queue full, dropped oldest message")
        return len(subscribers)
