"""The run-scoped channel a worker joins after claiming a run."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from .. import retention
from ..constants import BLANK_MESSAGE
from ..contracts import (
    LogParams,
    RunCompleteParams,
    StepCompleteParams,
    StepStartParams,
    parse_params,
)
from ..errors import NotFound, RunwireError, Unauthorized, ValidationError
from ..runs import RunContext
from ..scrubber import Scrubber
from .adapter import translate
from .protocol import Binary, Reply

if TYPE_CHECKING:
    from ..runtime import Runtime

logger = logging.getLogger(__name__)

RUN_TOPIC_PREFIXES = ("run:", "attempt:")


def run_id_from_topic(topic: str) -> Optional[str]:
    for prefix in RUN_TOPIC_PREFIXES:
        if topic.startswith(prefix) and len(topic) > len(prefix):
            return topic[len(prefix):]
    return None


def join_error(exc: Exception) -> Dict[str, str]:
    """Join refusals say only ``not_found`` or ``unauthorized``."""
    if isinstance(exc, NotFound):
        return {"reason": "not_found"}
    return {"reason": "unauthorized"}


def error_reply(exc: RunwireError) -> Reply:
    return Reply.error({"errors": exc.to_reply()})


class RunChannel:
    """Request/reply handlers for one run.

    Inbound event names pass through the legacy adapter first, so handlers
    only ever see current names and ``step_id``.
    """

    def __init__(self, runtime: "Runtime", topic: str, context: RunContext, claims: Dict[str, Any]) -> None:
        self.runtime = runtime
        self.topic = topic
        self.context = context
        self.claims = claims
        self.scrubber = Scrubber()
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Reply]]] = {
            "fetch:run": self.fetch_run,
            "fetch:dataclip": self.fetch_dataclip,
            "fetch:credential": self.fetch_credential,
            "step:start": self.start_step,
            "step:complete": self.complete_step,
            "run:start": self.start_run,
            "run:complete": self.complete_run,
            "run:log": self.append_log,
        }

    @property
    def run_id(self) -> str:
        return self.context.run.id

    @classmethod
    async def join(cls, runtime: "Runtime", topic: str, payload: Any) -> "RunChannel":
        """Verify the run token and load the run.

        Raises:
            Unauthorized: missing, invalid or foreign run token.
            NotFound: the token is valid but the run no longer exists.
        """
        run_id = run_id_from_topic(topic)
        token = payload.get("token") if isinstance(payload, dict) else None
        if run_id is None or not token:
            raise Unauthorized()
        claims = runtime.tokens.verify_run_token(token, run_id)
        context = await runtime.runs.get_for_worker(run_id)
        if context is None:
            raise NotFound("not_found")
        logger.info(f"Worker joined {topic}")
        return cls(runtime, topic, context, claims)

    async def handle_in(self, event: str, payload: Any) -> Optional[Reply]:
        event, payload = translate(self.topic, event, payload)
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"Ignoring unknown event {event!r} on {self.topic}")
            return None
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            return error_reply(ValidationError.single("base", "payload must be an object"))
        try:
            return await handler(payload)
        except RunwireError as exc:
            logger.info(f"{event} rejected for run {self.run_id}: {exc.message}")
            return error_reply(exc)
        except Exception:
            logger.exception(f"Unexpected error handling {event} for run {self.run_id}")
            return Reply.error({"errors": {"base": ["Internal server error"]}})

    # ------------------------------------------------------------------
    async def fetch_run(self, payload: Dict[str, Any]) -> Reply:
        rendered = await self.runtime.runs.render_run(self.context)
        return Reply.ok(rendered.model_dump(mode="json"))

    async def fetch_dataclip(self, payload: Dict[str, Any]) -> Reply:
        body = await self.runtime.runs.get_input(self.context.run)
        if retention.is_erase_all(self.context.retention_policy):
            await self.runtime.runs.wipe_input(self.context.run)
        return Reply.ok(Binary(body))

    async def fetch_credential(self, payload: Dict[str, Any]) -> Reply:
        credential_id = payload.get("id")
        if not credential_id:
            raise ValidationError.single("id", BLANK_MESSAGE)
        credential = await self.runtime.credentials.materialize(
            credential_id, self.context.workflow_id, self.context.project_id
        )
        self.scrubber.add_credential(credential.body)
        return Reply.ok(credential.body)

    async def start_step(self, payload: Dict[str, Any]) -> Reply:
        payload = retention.drop_dataclips(payload, self.context.retention_policy)
        params = parse_params(StepStartParams, payload)
        step = await self.runtime.runs.start_step(self.context, params)
        return Reply.ok({"step_id": step.id})

    async def complete_step(self, payload: Dict[str, Any]) -> Reply:
        payload = retention.drop_dataclips(payload, self.context.retention_policy)
        params = parse_params(StepCompleteParams, payload)
        step = await self.runtime.runs.complete_step(self.context, params)
        return Reply.ok({"step_id": step.id})

    async def start_run(self, payload: Dict[str, Any]) -> Reply:
        self.context.run = await self.runtime.runs.start_run(self.run_id)
        return Reply.ok(None)

    async def complete_run(self, payload: Dict[str, Any]) -> Reply:
        params = parse_params(RunCompleteParams, payload)
        self.context.run = await self.runtime.runs.complete_run(self.run_id, params)
        return Reply.ok(None)

    async def append_log(self, payload: Dict[str, Any]) -> Reply:
        params = parse_params(LogParams, payload)
        log_line = await self.runtime.runs.append_log(self.run_id, params, self.scrubber)
        return Reply.ok({"log_line_id": log_line.id})
