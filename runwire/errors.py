"""Error taxonomy shared by the orchestrator and the worker channel."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class RunwireError(Exception):
    """Base error carrying a field-keyed reply for the worker."""

    field: str = "base"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if field is not None:
            self.field = field

    def to_reply(self) -> Dict[str, Any]:
        """Structured error body sent back over the channel."""
        return {self.field: [self.message]}


class Unauthorized(RunwireError):
    """Token invalid, expired, premature or scoped to another run.

    The message is intentionally constant so callers cannot tell which check
    failed.
    """

    def __init__(self) -> None:
        super().__init__("unauthorized", field="reason")

    def to_reply(self) -> Dict[str, Any]:
        return {"reason": "unauthorized"}


class NotFound(RunwireError):
    """Run, step, credential or dataclip does not exist."""

    field = "id"


class InvalidTransition(RunwireError):
    """A state machine rule was violated."""

    field = "state"


class ValidationError(RunwireError):
    """One or more request fields are missing or malformed."""

    def __init__(self, errors: Dict[str, List[str]]) -> None:
        first = next(iter(errors.items()), ("base", ["is invalid"]))
        super().__init__(f"{first[0]} {first[1][0]}", field=first[0])
        self.errors = errors

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls({field: [message]})

    def to_reply(self) -> Dict[str, Any]:
        return dict(self.errors)


class UpstreamError(RunwireError):
    """OAuth provider unreachable, timed out or rejected the refresh."""

    field = "credential"

    def __init__(self, message: str, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_code = error_code

    def to_reply(self) -> Dict[str, Any]:
        return {self.field: ["Something went wrong when retrieving the credential"]}


class CredentialAccessDenied(RunwireError):
    """Credential is not shared with the run's project."""

    field = "id"
