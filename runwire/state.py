"""Run and work order state machine.

Pure functions only: nothing in here touches storage. The orchestrator uses
these rules to build conditional updates, so a transition is legal exactly
when the persisted state is one of ``allowed_from(target)``.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional

from .errors import InvalidTransition, ValidationError


class RunState(str, Enum):
    AVAILABLE = "available"
    CLAIMED = "claimed"
    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"
    CRASHED = "crashed"
    CANCELLED = "cancelled"
    KILLED = "killed"
    EXCEPTION = "exception"
    LOST = "lost"


class WorkOrderState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CRASHED = "crashed"
    CANCELLED = "cancelled"
    KILLED = "killed"
    EXCEPTION = "exception"
    LOST = "lost"


UNFINISHED_STATES: FrozenSet[RunState] = frozenset(
    {RunState.AVAILABLE, RunState.CLAIMED, RunState.STARTED}
)
FINAL_STATES: FrozenSet[RunState] = frozenset(set(RunState) - UNFINISHED_STATES)

_TRANSITIONS: Dict[RunState, FrozenSet[RunState]] = {
    RunState.AVAILABLE: frozenset({RunState.CLAIMED}),
    # claimed -> available is only taken by the reclaim sweep
    RunState.CLAIMED: frozenset({RunState.STARTED, RunState.AVAILABLE}),
    RunState.STARTED: FINAL_STATES,
}

# Worker-reported reasons; the terminal state names themselves are accepted too.
REASON_TO_STATE: Dict[str, RunState] = {
    "normal": RunState.SUCCESS,
    "ok": RunState.SUCCESS,
    "success": RunState.SUCCESS,
    "fail": RunState.FAILED,
    "crash": RunState.CRASHED,
    "cancel": RunState.CANCELLED,
    "kill": RunState.KILLED,
    "exception": RunState.EXCEPTION,
    **{state.value: state for state in FINAL_STATES},
}

# Higher wins when several runs of one work order have finished.
OUTCOME_PRECEDENCE: Dict[RunState, int] = {
    RunState.SUCCESS: 0,
    RunState.CANCELLED: 1,
    RunState.FAILED: 2,
    RunState.CRASHED: 3,
    RunState.KILLED: 3,
    RunState.EXCEPTION: 3,
    RunState.LOST: 3,
}

NOT_STARTED_MESSAGE = "cannot complete attempt that is not started"
ALREADY_COMPLETED_MESSAGE = "already in completed state"


def coerce(state: str | RunState) -> RunState:
    return state if isinstance(state, RunState) else RunState(state)


def can_transition(current: str | RunState, target: str | RunState) -> bool:
    return coerce(target) in _TRANSITIONS.get(coerce(current), frozenset())


def allowed_from(target: str | RunState) -> FrozenSet[RunState]:
    """States from which ``target`` may be reached."""
    target = coerce(target)
    return frozenset(src for src, dests in _TRANSITIONS.items() if target in dests)


def assert_can_start(current: str | RunState) -> None:
    current = coerce(current)
    if current in FINAL_STATES:
        raise InvalidTransition(ALREADY_COMPLETED_MESSAGE)
    if current is not RunState.CLAIMED:
        raise InvalidTransition("cannot start attempt that is not claimed")


def assert_can_complete(current: str | RunState) -> None:
    current = coerce(current)
    if current in FINAL_STATES:
        raise InvalidTransition(ALREADY_COMPLETED_MESSAGE)
    if current is not RunState.STARTED:
        raise InvalidTransition(NOT_STARTED_MESSAGE)


def assert_run_accepts_steps(current: str | RunState) -> None:
    if coerce(current) is not RunState.STARTED:
        raise InvalidTransition("cannot start a step on an attempt that is not started")


def outcome_for_reason(reason: Optional[str]) -> RunState:
    """Map a worker ``reason`` to the terminal run state."""
    if reason is None or (isinstance(reason, str) and not reason.strip()):
        raise ValidationError.single("reason", "This field can't be blank.")
    try:
        return REASON_TO_STATE[reason]
    except KeyError:
        raise ValidationError.single("reason", "is invalid") from None


def work_order_state(run_states: Iterable[str | RunState]) -> WorkOrderState:
    """Aggregate state of a work order from its runs, oldest first.

    ``running`` while any run has started, ``pending`` while the remaining
    runs are waiting to be claimed or started, otherwise the worst outcome by
    ``OUTCOME_PRECEDENCE`` with ties resolved in favour of the latest run.
    """
    states = [coerce(s) for s in run_states]
    if not states:
        return WorkOrderState.PENDING
    if RunState.STARTED in states:
        return WorkOrderState.RUNNING
    if any(s in UNFINISHED_STATES for s in states):
        return WorkOrderState.PENDING

    worst = states[0]
    for state in states[1:]:
        if OUTCOME_PRECEDENCE[state] >= OUTCOME_PRECEDENCE[worst]:
            worst = state
    return WorkOrderState(worst.value)
