from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from ..errors import RunwireError, ValidationError
from .protocol import Reply
from .run_channel import error_reply

if TYPE_CHECKING:
    from ..runtime import Runtime

logger = logging.getLogger(__name__)

QUEUE_TOPIC = "worker:queue"


class WorkerChannel:
    """``worker:queue``: where a worker asks for runs to execute."""

    def __init__(self, runtime: "Runtime", worker_name: str) -> None:
        self.runtime = runtime
        self.worker_name = worker_name

    async def handle_in(self, event: str, payload: Any) -> Optional[Reply]:
        if event != "claim":
            logger.debug(f"Ignoring unknown event {event!r} on {QUEUE_TOPIC}")
            return None
        payload = payload if isinstance(payload, dict) else {}
        try:
            demand = int(payload.get("demand", 1))
        except (TypeError, ValueError):
            return error_reply(ValidationError.single("demand", "is invalid"))
        worker_name = payload.get("worker_name") or self.worker_name
        try:
            claimed = await self.runtime.queue.claim(demand, worker_name)
        except RunwireError as exc:
            return error_reply(exc)
        return Reply.ok({"runs": [run.model_dump() for run in claimed]})
