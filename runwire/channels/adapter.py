"""Translation of messages from older worker builds."""

from __future__ import annotations

import logging
from typing import Any, Dict, Tuple

logger = logging.getLogger(__name__)

LEGACY_TOPIC_PREFIX = "attempt:"
UPGRADE_VERSION = "v0.7.0"

# Older workers called runs "attempts".
RUN_ALIASES = {
    "attempt:start": "run:start",
    "attempt:complete": "run:complete",
    "attempt:log": "run:log",
    "fetch:attempt": "fetch:run",
    "log": "run:log",
}

# ... and steps "runs".
STEP_ALIASES = {
    "run:start": "step:start",
    "run:complete": "step:complete",
}


def rename_run_id(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Legacy payloads name the step ``run_id``."""
    if "run_id" not in payload:
        return payload
    renamed = {k: v for k, v in payload.items() if k != "run_id"}
    renamed["step_id"] = payload["run_id"]
    return renamed


def is_legacy_topic(topic: str) -> bool:
    return topic.startswith(LEGACY_TOPIC_PREFIX)


def translate(topic: str, event: str, payload: Any) -> Tuple[str, Any]:
    """Map an inbound ``(event, payload)`` to its current name and shape.

    ``run:start``/``run:complete`` mean step events only on a legacy topic
    or when the payload still carries ``run_id``.
    """
    if not isinstance(payload, dict):
        return RUN_ALIASES.get(event, event), payload

    if event in STEP_ALIASES and (is_legacy_topic(topic) or "run_id" in payload):
        _upgrade_required(topic, event)
        return STEP_ALIASES[event], rename_run_id(payload)

    if event in RUN_ALIASES:
        if event != "log":
            _upgrade_required(topic, event)
        return RUN_ALIASES[event], rename_run_id(payload)

    if event == "run:log":
        return event, rename_run_id(payload)
    return event, payload


def _upgrade_required(topic: str, event: str) -> None:
    logger.warning(
        f"Legacy message {event!r} on {topic}; "
        f"please upgrade your worker to {UPGRADE_VERSION} or greater"
    )
