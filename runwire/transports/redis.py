"""Redis pub/sub transport for fanning run events out across processes."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis
from pydantic import ValidationError

from ..events import RunEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport):
    """One Redis channel per topic; Redis delivers to whoever is subscribed."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "runwire",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _key(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: RunEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.publish(self._key(topic), message.to_json())

    @asynccontextmanager
    async def subscribe(self, topic: str) -> AsyncIterator[AsyncIterator[RunEvent]]:
        if not self._redis:
            await self.connect()

        channel = self._key(topic)
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(channel)
        try:
            yield self._listen(pubsub, channel)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def _listen(self, pubsub: Any, channel: str) -> AsyncIterator[RunEvent]:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                yield RunEvent.from_json(message["data"])
            except ValidationError as e:
                logger.warning(f"Dropping malformed event on {channel}: {e}")
