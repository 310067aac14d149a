"""Base transport interface for runwire event delivery."""

from __future__ import annotations

import abc
from typing import AsyncContextManager, AsyncIterator

from ..events import RunEvent


class BaseTransport(metaclass=abc.ABCMeta):
    """Fan-out broker for run events.

    Every subscriber of a topic receives each event published after it
    subscribed. Events on a topic nobody is subscribed to are dropped.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: RunEvent) -> None:
        """Send an event to every current subscriber of a topic."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(self, topic: str) -> AsyncContextManager[AsyncIterator[RunEvent]]:
        """Subscribe to a topic for the duration of an ``async with`` block.

        The subscription is registered on entry, so events published inside
        the block are never missed. Leaving the block unsubscribes.
        """
        raise NotImplementedError
