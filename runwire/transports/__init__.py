"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RunwireConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[RunwireConfig] = None
) -> BaseTransport:
    """Factory function to get the configured event transport."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("RUNWIRE_TRANSPORT")
        or config.transport.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryTransport(max_pending=config.transport.subscriber_queue_size)
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
