"""Wire contracts exchanged with workers over the run channel."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .constants import BLANK_MESSAGE, DEFAULT_RUN_TIMEOUT_MS
from .db.models import utcnow
from .errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)

_EPOCH = datetime(1970, 1, 1)


class TriggerPayload(BaseModel):
    id: str


class JobPayload(BaseModel):
    id: str
    name: str
    body: str
    adaptor: str
    credential_id: Optional[str] = None


class EdgePayload(BaseModel):
    id: str
    source_trigger_id: Optional[str] = None
    source_job_id: Optional[str] = None
    target_job_id: str
    condition: Optional[str] = None
    enabled: bool = True


class RunOptions(BaseModel):
    """Execution options handed to the worker with the run definition."""

    output_dataclips: bool = True
    run_timeout_ms: int = DEFAULT_RUN_TIMEOUT_MS


class RunPayload(BaseModel):
    """Reply body for ``fetch:run``."""

    id: str
    triggers: List[TriggerPayload] = Field(default_factory=list)
    jobs: List[JobPayload] = Field(default_factory=list)
    edges: List[EdgePayload] = Field(default_factory=list)
    starting_node_id: Optional[str] = None
    dataclip_id: Optional[str] = None
    options: RunOptions = Field(default_factory=RunOptions)


# ----------------------------------------------------------------------
# Inbound parameters


class _Params(BaseModel):
    model_config = ConfigDict(extra="ignore")


def _require(value: Any) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(BLANK_MESSAGE)
    return value


class StepStartParams(_Params):
    step_id: str
    job_id: str
    input_dataclip_id: Optional[str] = None
    credential_id: Optional[str] = None

    @field_validator("step_id", "job_id", mode="before")
    @classmethod
    def require_present(cls, value: Any) -> Any:
        return _require(value)


class StepCompleteParams(_Params):
    step_id: str
    reason: str
    output_dataclip: Optional[Any] = None
    output_dataclip_id: Optional[str] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    @field_validator("step_id", "reason", mode="before")
    @classmethod
    def require_present(cls, value: Any) -> Any:
        return _require(value)

    @field_validator("output_dataclip", mode="before")
    @classmethod
    def keep_raw_json(cls, value: Any) -> Any:
        # Workers send the output as a JSON string; keep those bytes as-is.
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)


class RunCompleteParams(_Params):
    reason: str
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    @field_validator("reason", mode="before")
    @classmethod
    def require_present(cls, value: Any) -> Any:
        return _require(value)


def _stringify(part: Any) -> str:
    return part if isinstance(part, str) else json.dumps(part)


def parse_timestamp(value: Any) -> datetime:
    """Parse a microsecond epoch (int or digit string) into naive UTC."""
    if value is None or value == "":
        return utcnow()
    if isinstance(value, datetime):
        return value
    try:
        micros = int(value)
    except (TypeError, ValueError):
        raise ValueError("is invalid") from None
    return _EPOCH + timedelta(microseconds=micros)


class LogParams(_Params):
    """A single log line; ``message`` may arrive as a list of parts."""

    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    level: Optional[str] = None
    source: Optional[str] = None
    step_id: Optional[str] = None

    @field_validator("message", mode="before")
    @classmethod
    def join_message(cls, value: Any) -> str:
        if isinstance(value, list):
            value = " ".join(_stringify(part) for part in value if part is not None)
        elif value is not None and not isinstance(value, str):
            value = _stringify(value)
        return _require(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_micros(cls, value: Any) -> datetime:
        return parse_timestamp(value)


def parse_params(model: Type[ModelT], payload: Optional[Dict[str, Any]]) -> ModelT:
    """Validate ``payload`` against ``model`` with field-keyed errors.

    Raises:
        ValidationError: with one message list per offending field.
    """
    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as exc:
        errors: Dict[str, List[str]] = {}
        for err in exc.errors():
            field = str(err["loc"][0]) if err.get("loc") else "base"
            if err["type"] == "missing":
                message = BLANK_MESSAGE
            else:
                message = str(err.get("ctx", {}).get("error", err["msg"]))
            errors.setdefault(field, []).append(message)
        raise ValidationError(errors) from None
