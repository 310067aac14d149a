"""Multiplexing channels over one worker WebSocket connection."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Set

from ..errors import RunwireError
from .protocol import (
    HEARTBEAT,
    PHOENIX_TOPIC,
    PHX_CLOSE,
    PHX_JOIN,
    PHX_LEAVE,
    Frame,
    FrameError,
    Reply,
    decode_frame,
    encode_frame,
    encode_reply,
)
from .run_channel import RunChannel, join_error, run_id_from_topic
from .worker_channel import QUEUE_TOPIC, WorkerChannel

if TYPE_CHECKING:
    from ..runtime import Runtime

logger = logging.getLogger(__name__)

Sender = Callable[[str], Awaitable[None]]


class _Joined:
    """A joined channel and the task draining its inbox in arrival order."""

    def __init__(self, socket: "WorkerSocket", topic: str, join_ref: Optional[str], channel: Any) -> None:
        self.topic = topic
        self.join_ref = join_ref
        self.channel = channel
        self.inbox: "asyncio.Queue[Frame]" = asyncio.Queue()
        self.task = asyncio.create_task(self._drain(socket))

    async def _drain(self, socket: "WorkerSocket") -> None:
        while True:
            frame = await self.inbox.get()
            reply = await self.channel.handle_in(frame.event, frame.payload)
            if reply is not None:
                await socket.send(encode_reply(frame.join_ref, frame.ref, frame.topic, reply))


class WorkerSocket:
    """One authenticated worker connection.

    Each joined topic gets its own task, so a slow credential refresh on one
    run never holds up messages for another.
    """

    def __init__(self, runtime: "Runtime", worker_claims: Dict[str, Any], send: Sender) -> None:
        self.runtime = runtime
        self.worker_claims = worker_claims
        self._send = send
        self._send_lock = asyncio.Lock()
        self.joined: Dict[str, _Joined] = {}

    @property
    def worker_name(self) -> str:
        return str(self.worker_claims.get("sub") or "worker")

    async def send(self, text: str) -> None:
        async with self._send_lock:
            await self._send(text)

    async def reply(self, frame: Frame, reply: Reply) -> None:
        await self.send(encode_reply(frame.join_ref, frame.ref, frame.topic, reply))

    async def push(self, topic: str, event: str, payload: Any) -> None:
        joined = self.joined.get(topic)
        join_ref = joined.join_ref if joined else None
        await self.send(encode_frame(join_ref, None, topic, event, payload))

    # ------------------------------------------------------------------
    async def handle_text(self, text: str) -> None:
        try:
            frame = decode_frame(text)
        except FrameError as exc:
            logger.warning(f"Dropping malformed frame from {self.worker_name}: {exc}")
            return

        if frame.topic == PHOENIX_TOPIC and frame.event == HEARTBEAT:
            await self.reply(frame, Reply.ok({}))
        elif frame.event == PHX_JOIN:
            await self._join(frame)
        elif frame.event == PHX_LEAVE:
            await self.leave(frame.topic)
            await self.reply(frame, Reply.ok({}))
        else:
            joined = self.joined.get(frame.topic)
            if joined is None:
                await self.reply(frame, Reply.error({"reason": "unmatched topic"}))
            else:
                joined.inbox.put_nowait(frame)

    async def _join(self, frame: Frame) -> None:
        if frame.topic in self.joined:
            await self.leave(frame.topic)
        try:
            channel = await self._open(frame.topic, frame.payload)
        except RunwireError as exc:
            logger.info(f"Join refused for {frame.topic}: {exc.message}")
            await self.reply(frame, Reply.error(join_error(exc)))
            return
        if channel is None:
            await self.reply(frame, Reply.error({"reason": "unmatched topic"}))
            return

        self.joined[frame.topic] = _Joined(self, frame.topic, frame.join_ref, channel)
        if isinstance(channel, RunChannel):
            self.runtime.registry.register(channel.run_id, self)
        await self.reply(frame, Reply.ok({}))

    async def _open(self, topic: str, payload: Any) -> Optional[Any]:
        if topic == QUEUE_TOPIC:
            return WorkerChannel(self.runtime, self.worker_name)
        if run_id_from_topic(topic) is not None:
            return await RunChannel.join(self.runtime, topic, payload)
        return None

    async def leave(self, topic: str) -> None:
        joined = self.joined.pop(topic, None)
        if joined is None:
            return
        joined.task.cancel()
        if isinstance(joined.channel, RunChannel):
            self.runtime.registry.unregister(joined.channel.run_id, self)

    async def kill(self, run_id: str) -> None:
        """Tell the worker to stop ``run_id`` and close its channel."""
        for topic, joined in list(self.joined.items()):
            if isinstance(joined.channel, RunChannel) and joined.channel.run_id == run_id:
                await self.push(topic, "kill", {})
                await self.push(topic, PHX_CLOSE, {})
                await self.leave(topic)

    async def close(self) -> None:
        for topic in list(self.joined):
            await self.leave(topic)


class ChannelRegistry:
    """Which sockets currently hold a channel for which run."""

    def __init__(self) -> None:
        self._sockets: Dict[str, Set[WorkerSocket]] = {}

    def register(self, run_id: str, socket: WorkerSocket) -> None:
        self._sockets.setdefault(run_id, set()).add(socket)

    def unregister(self, run_id: str, socket: WorkerSocket) -> None:
        sockets = self._sockets.get(run_id)
        if sockets is None:
            return
        sockets.discard(socket)
        if not sockets:
            del self._sockets[run_id]

    def connected(self, run_id: str) -> bool:
        return bool(self._sockets.get(run_id))

    async def kill(self, run_id: str) -> None:
        for socket in list(self._sockets.get(run_id, ())):
            await socket.kill(run_id)
        if run_id not in self._sockets:
            logger.info(f"Kill sent for run {run_id}")
