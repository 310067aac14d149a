"""Run and step status change notifications."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncContextManager, AsyncIterator, Dict, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .db import LogLine, Run, Step
    from .transports import BaseTransport

logger = logging.getLogger(__name__)

RUN_UPDATED = "run_updated"
STEP_STARTED = "step_started"
STEP_COMPLETED = "step_completed"
LOG_APPENDED = "log_appended"
DATACLIP_WIPED = "dataclip_wiped"
RUN_STALLED = "run_stalled"


def run_topic(run_id: str) -> str:
    return f"runs:{run_id}"


def project_topic(project_id: str) -> str:
    return f"project:{project_id}"


class RunEvent(BaseModel):
    """Envelope published whenever a run or one of its steps changes."""

    event: str
    run_id: str
    project_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "RunEvent":
        return cls.model_validate_json(data)


def _run_payload(run: "Run") -> Dict[str, Any]:
    return {
        "id": run.id,
        "work_order_id": run.work_order_id,
        "state": run.state,
        "error_type": run.error_type,
        "claimed_at": run.claimed_at.isoformat() if run.claimed_at else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }


def _step_payload(step: "Step") -> Dict[str, Any]:
    return {
        "id": step.id,
        "job_id": step.job_id,
        "exit_reason": step.exit_reason,
        "input_dataclip_id": step.input_dataclip_id,
        "output_dataclip_id": step.output_dataclip_id,
    }


class RunEvents:
    """Publishes :class:`RunEvent` messages over a transport.

    Each event goes to the run topic and, when known, the project topic that
    browser-facing channels subscribe to. Events are sent after the change is
    committed, so a transport failure is logged and never undoes or hides it.
    """

    def __init__(self, transport: "BaseTransport") -> None:
        self._transport = transport

    async def publish(self, event: RunEvent) -> None:
        topics = [run_topic(event.run_id)]
        if event.project_id:
            topics.append(project_topic(event.project_id))
        for topic in topics:
            try:
                await self._transport.publish(topic, event)
            except Exception:
                logger.exception(f"Failed to publish {event.event} for run_id={event.run_id} on {topic}")

    def subscribe_run(self, run_id: str) -> AsyncContextManager[AsyncIterator[RunEvent]]:
        return self._transport.subscribe(run_topic(run_id))

    def subscribe_project(self, project_id: str) -> AsyncContextManager[AsyncIterator[RunEvent]]:
        return self._transport.subscribe(project_topic(project_id))

    async def run_updated(self, run: "Run", project_id: Optional[str] = None) -> None:
        await self.publish(
            RunEvent(
                event=RUN_UPDATED,
                run_id=run.id,
                project_id=project_id,
                payload=_run_payload(run),
            )
        )

    async def step_started(self, run_id: str, step: "Step", project_id: Optional[str] = None) -> None:
        await self.publish(
            RunEvent(event=STEP_STARTED, run_id=run_id, project_id=project_id, payload=_step_payload(step))
        )

    async def step_completed(self, run_id: str, step: "Step", project_id: Optional[str] = None) -> None:
        await self.publish(
            RunEvent(event=STEP_COMPLETED, run_id=run_id, project_id=project_id, payload=_step_payload(step))
        )

    async def log_appended(self, log_line: "LogLine") -> None:
        await self.publish(
            RunEvent(
                event=LOG_APPENDED,
                run_id=log_line.run_id,
                payload={
                    "id": log_line.id,
                    "step_id": log_line.step_id,
                    "level": log_line.level,
                    "source": log_line.source,
                    "message": log_line.message,
                    "timestamp": log_line.timestamp.isoformat(),
                },
            )
        )

    async def dataclip_wiped(self, run_id: str, dataclip_id: str) -> None:
        await self.publish(
            RunEvent(event=DATACLIP_WIPED, run_id=run_id, payload={"dataclip_id": dataclip_id})
        )

    async def run_stalled(self, run: "Run") -> None:
        await self.publish(RunEvent(event=RUN_STALLED, run_id=run.id, payload=_run_payload(run)))
