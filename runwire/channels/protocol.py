"""Phoenix v2 frame serializer and channel replies."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, NamedTuple, Optional

PHX_JOIN = "phx_join"
PHX_LEAVE = "phx_leave"
PHX_REPLY = "phx_reply"
PHX_CLOSE = "phx_close"
HEARTBEAT = "heartbeat"
PHOENIX_TOPIC = "phoenix"


class Frame(NamedTuple):
    join_ref: Optional[str]
    ref: Optional[str]
    topic: str
    event: str
    payload: Any


class FrameError(ValueError):
    pass


@dataclass
class Binary:
    """Raw JSON text sent without re-encoding; ``None`` is sent as ``null``."""

    data: Optional[str]


@dataclass
class Reply:
    status: str
    response: Any = None

    @classmethod
    def ok(cls, response: Any = None) -> "Reply":
        return cls("ok", response)

    @classmethod
    def error(cls, response: Any) -> "Reply":
        return cls("error", response)


def decode_frame(text: str) -> Frame:
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise FrameError(f"frame is not JSON: {exc}") from None
    if not isinstance(data, list) or len(data) != 5:
        raise FrameError("frame must be [join_ref, ref, topic, event, payload]")
    join_ref, ref, topic, event, payload = data
    if not isinstance(topic, str) or not isinstance(event, str):
        raise FrameError("topic and event must be strings")
    return Frame(join_ref, ref, topic, event, payload)


def encode_frame(
    join_ref: Optional[str], ref: Optional[str], topic: str, event: str, payload: Any
) -> str:
    return json.dumps([join_ref, ref, topic, event, payload])


def encode_reply(join_ref: Optional[str], ref: Optional[str], topic: str, reply: Reply) -> str:
    if not isinstance(reply.response, Binary):
        return encode_frame(
            join_ref, ref, topic, PHX_REPLY, {"status": reply.status, "response": reply.response}
        )
    # splice the stored bytes in verbatim
    raw = reply.response.data if reply.response.data is not None else "null"
    head = json.dumps([join_ref, ref, topic, PHX_REPLY])[:-1]
    return f'{head}, {{"status": {json.dumps(reply.status)}, "response": {raw}}}]'
