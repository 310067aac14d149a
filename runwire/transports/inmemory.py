"""In-memory transport for single-process deployments and tests."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Set

from ..constants import DEFAULT_SUBSCRIBER_QUEUE_SIZE
from ..events import RunEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)


async def _drain(queue: "asyncio.Queue[RunEvent]") -> AsyncIterator[RunEvent]:
    while True:
        yield await queue.get()


class InMemoryTransport(BaseTransport):
    """One bounded queue per live subscriber; nothing is kept for absent ones."""

    def __init__(self, max_pending: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE) -> None:
        self.max_pending = max_pending
        self._subscribers: Dict[str, Set["asyncio.Queue[RunEvent]"]] = defaultdict(set)

    async def publish(self, topic: str, message: RunEvent) -> None:
        for queue in list(self._subscribers.get(topic, ())):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(f"Subscriber on {topic} is full; dropping {message.event}")

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    @asynccontextmanager
    async def subscribe(self, topic: str) -> AsyncIterator[AsyncIterator[RunEvent]]:
        queue: "asyncio.Queue[RunEvent]" = asyncio.Queue(maxsize=self.max_pending)
        self._subscribers[topic].add(queue)
        try:
            yield _drain(queue)
        finally:
            subscribers = self._subscribers.get(topic)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[topic]
