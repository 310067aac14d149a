"""Storage-facing operations behind the worker channel."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import retention, state
from .constants import DEFAULT_RUN_TIMEOUT_MS
from .contracts import (
    EdgePayload,
    JobPayload,
    LogParams,
    RunCompleteParams,
    RunOptions,
    RunPayload,
    StepCompleteParams,
    StepStartParams,
    TriggerPayload,
)
from .db import (
    Dataclip,
    Edge,
    Job,
    LogLine,
    Project,
    Run,
    RunStep,
    RunStore,
    Step,
    Trigger,
    WorkOrder,
    Workflow,
    utcnow,
)
from .errors import InvalidTransition, NotFound, ValidationError
from .events import RunEvents
from .scrubber import Scrubber
from .state import RunState
from .work_orders import refresh_work_order_state

logger = logging.getLogger(__name__)

KillListener = Callable[[str], Awaitable[None]]


@dataclass
class RunContext:
    """What a channel needs to know about its run after joining."""

    run: Run
    workflow_id: str
    project_id: str
    retention_policy: str


def run_timeout_ms(run: Run) -> int:
    options = run.options or {}
    try:
        return int(options.get("run_timeout_ms") or DEFAULT_RUN_TIMEOUT_MS)
    except (TypeError, ValueError):
        return DEFAULT_RUN_TIMEOUT_MS


def _edge_condition(edge: Edge) -> str:
    if edge.condition_type == "js_expression" and edge.condition_expression:
        return edge.condition_expression
    return edge.condition_type


class RunService:
    """Run and step lifecycle operations.

    Every state change is a conditional ``UPDATE ... WHERE state IN (...)``.
    A zero rowcount means the run moved under us; the current state is then
    reloaded to build the error the worker gets back.
    """

    def __init__(self, store: RunStore, events: RunEvents) -> None:
        self.store = store
        self.events = events
        self._kill_listeners: List[KillListener] = []

    def add_kill_listener(self, listener: KillListener) -> None:
        self._kill_listeners.append(listener)

    # ------------------------------------------------------------------
    # Lookups

    async def get(self, run_id: str) -> Optional[Run]:
        return await self.store.get(Run, run_id)

    async def get_for_worker(self, run_id: str) -> Optional[RunContext]:
        """Load a run together with the workflow, project and policy it runs under."""
        async with self.store.session() as session:
            run = await session.get(Run, run_id)
            if run is None:
                return None
            work_order = await session.get(WorkOrder, run.work_order_id)
            workflow = await session.get(Workflow, work_order.workflow_id)
            project = await session.get(Project, workflow.project_id)
            return RunContext(
                run=run,
                workflow_id=workflow.id,
                project_id=project.id,
                retention_policy=project.retention_policy,
            )

    async def render_run(self, context: RunContext) -> RunPayload:
        run = context.run
        async with self.store.session() as session:
            triggers = await session.execute(
                select(Trigger).where(Trigger.workflow_id == context.workflow_id)
            )
            jobs = await session.execute(select(Job).where(Job.workflow_id == context.workflow_id))
            edges = await session.execute(select(Edge).where(Edge.workflow_id == context.workflow_id))
            return RunPayload(
                id=run.id,
                triggers=[TriggerPayload(id=t.id) for t in triggers.scalars()],
                jobs=[
                    JobPayload(
                        id=j.id,
                        name=j.name,
                        body=j.body,
                        adaptor=j.adaptor,
                        credential_id=j.credential_id,
                    )
                    for j in jobs.scalars()
                ],
                edges=[
                    EdgePayload(
                        id=e.id,
                        source_trigger_id=e.source_trigger_id,
                        source_job_id=e.source_job_id,
                        target_job_id=e.target_job_id,
                        condition=_edge_condition(e),
                        enabled=e.enabled,
                    )
                    for e in edges.scalars()
                ],
                starting_node_id=run.starting_trigger_id or run.starting_job_id,
                dataclip_id=run.dataclip_id,
                options=RunOptions(
                    output_dataclips=retention.include_output_dataclips(context.retention_policy),
                    run_timeout_ms=run_timeout_ms(run),
                ),
            )

    async def get_input(self, run: Run) -> Optional[str]:
        """The run's input as JSON text, shaped for use as initial state.

        ``http_request`` and ``kafka`` bodies are nested under ``data`` with
        the request metadata under ``request``. Wiped dataclips give ``None``.
        """
        if not run.dataclip_id:
            return None
        dataclip = await self.store.get(Dataclip, run.dataclip_id)
        if dataclip is None or dataclip.wiped_at is not None or dataclip.body is None:
            return None
        if dataclip.type in ("http_request", "kafka"):
            return f'{{"data": {dataclip.body}, "request": {dataclip.request or "null"}}}'
        return dataclip.body

    async def wipe_input(self, run: Run) -> None:
        if run.dataclip_id and await retention.wipe_dataclip(self.store, run.dataclip_id):
            await self.events.dataclip_wiped(run.id, run.dataclip_id)

    # ------------------------------------------------------------------
    # Run transitions

    async def _transition(
        self,
        session: AsyncSession,
        run_id: str,
        target: RunState,
        allowed: frozenset,
        **values,
    ) -> bool:
        result = await session.execute(
            update(Run)
            .where(Run.id == run_id, Run.state.in_([s.value for s in allowed]))
            .values(state=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _finish_transition(self, session: AsyncSession, run_id: str) -> Run:
        run = await session.get(Run, run_id, populate_existing=True)
        work_order = await refresh_work_order_state(session, run.work_order_id)
        await session.commit()
        project_id = await self._project_for_work_order(session, work_order)
        await self.events.run_updated(run, project_id)
        return run

    async def _project_for_work_order(self, session: AsyncSession, work_order: WorkOrder) -> str:
        workflow = await session.get(Workflow, work_order.workflow_id)
        return workflow.project_id

    async def _current_state(self, session: AsyncSession, run_id: str) -> RunState:
        result = await session.execute(select(Run.state).where(Run.id == run_id))
        current = result.scalars().first()
        if current is None:
            raise NotFound("Run not found!")
        return state.coerce(current)

    async def start_run(self, run_id: str) -> Run:
        """``claimed -> started``; the work order becomes ``running``."""

        async def op() -> Run:
            async with self.store.session() as session:
                if not await self._transition(
                    session,
                    run_id,
                    RunState.STARTED,
                    state.allowed_from(RunState.STARTED),
                    started_at=utcnow(),
                ):
                    await session.rollback()
                    state.assert_can_start(await self._current_state(session, run_id))
                    raise InvalidTransition("state changed while updating")
                run = await self._finish_transition(session, run_id)
            logger.info(f"Run {run_id} started")
            return run

        return await self.store.with_contention_retry(op)

    async def complete_run(self, run_id: str, params: RunCompleteParams) -> Run:
        """``started -> <outcome>`` where the outcome comes from ``params.reason``."""
        outcome = state.outcome_for_reason(params.reason)
        return await self._complete(
            run_id,
            outcome,
            error_type=params.error_type,
            error_message=params.error_message,
        )

    async def _complete(
        self,
        run_id: str,
        outcome: RunState,
        allowed: Optional[frozenset] = None,
        **values,
    ) -> Run:
        allowed = allowed or state.allowed_from(outcome)

        async def op() -> Run:
            async with self.store.session() as session:
                if not await self._transition(
                    session, run_id, outcome, allowed, finished_at=utcnow(), **values
                ):
                    await session.rollback()
                    state.assert_can_complete(await self._current_state(session, run_id))
                    raise InvalidTransition("state changed while updating")
                run = await self._finish_transition(session, run_id)
            logger.info(f"Run {run_id} finished as {outcome.value}")
            return run

        return await self.store.with_contention_retry(op)

    async def cancel_run(self, run_id: str) -> Run:
        """Cancel a started run from outside the worker.

        The transition stands whether or not a worker is still connected;
        connected workers are told to stop.
        """
        run = await self._complete(run_id, RunState.CANCELLED, error_type="Cancelled")
        for listener in list(self._kill_listeners):
            try:
                await listener(run_id)
            except Exception:
                logger.exception(f"Kill listener failed for run {run_id}")
        return run

    async def mark_lost(self, run: Run) -> Optional[Run]:
        """Finalize an abandoned run as ``lost`` along with its unfinished steps."""
        error_type = {
            RunState.CLAIMED.value: "LostAfterClaim",
            RunState.STARTED.value: "LostAfterStart",
        }.get(run.state, "UnknownReason")
        try:
            lost = await self._complete(
                run.id,
                RunState.LOST,
                allowed=frozenset({RunState.CLAIMED, RunState.STARTED}),
                error_type=error_type,
            )
        except InvalidTransition:
            return None

        async with self.store.session() as session:
            step_ids = select(RunStep.step_id).where(RunStep.run_id == run.id)
            await session.execute(
                update(Step)
                .where(Step.id.in_(step_ids), Step.exit_reason.is_(None))
                .values(exit_reason="lost", finished_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.warning(f"Detected lost run {run.id} with reason {error_type}")
        return lost

    # ------------------------------------------------------------------
    # Steps

    async def start_step(self, context: RunContext, params: StepStartParams) -> Step:
        run_id = context.run.id
        input_dataclip_id = params.input_dataclip_id
        if retention.is_erase_all(context.retention_policy):
            input_dataclip_id = None

        async with self.store.session() as session:
            state.assert_run_accepts_steps(await self._current_state(session, run_id))
            job = await session.get(Job, params.job_id)
            if job is None or job.workflow_id != context.workflow_id:
                raise ValidationError.single("job_id", "Job not found!")
            if await session.get(Step, params.step_id) is not None:
                raise ValidationError.single("step_id", "has already been taken")
            if input_dataclip_id and await session.get(Dataclip, input_dataclip_id) is None:
                raise ValidationError.single("input_dataclip_id", "does not exist")

            step = Step(
                id=params.step_id,
                job_id=job.id,
                credential_id=params.credential_id,
                input_dataclip_id=input_dataclip_id,
                started_at=utcnow(),
            )
            session.add(step)
            try:
                await session.flush()
                session.add(RunStep(run_id=run_id, step_id=step.id))
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ValidationError.single("step_id", "has already been taken") from None

        logger.info(f"Step {step.id} started for job {job.id} in run {run_id}")
        await self.events.step_started(run_id, step, context.project_id)
        return step

    async def complete_step(self, context: RunContext, params: StepCompleteParams) -> Step:
        """Finalize a step; under ``retain_all`` its output becomes a dataclip."""
        run_id = context.run.id
        retain = not retention.is_erase_all(context.retention_policy)

        async def op() -> Step:
            async with self.store.session() as session:
                if await session.get(RunStep, (run_id, params.step_id)) is None:
                    raise ValidationError.single("step_id", "Step not found!")

                output_id = None
                if retain and params.output_dataclip is not None:
                    dataclip = Dataclip(
                        project_id=context.project_id,
                        type="step_result",
                        body=params.output_dataclip,
                    )
                    if params.output_dataclip_id:
                        dataclip.id = params.output_dataclip_id
                    session.add(dataclip)
                    try:
                        await session.flush()
                    except IntegrityError:
                        await session.rollback()
                        raise ValidationError.single(
                            "output_dataclip_id", "has already been taken"
                        ) from None
                    output_id = dataclip.id
                elif retain and params.output_dataclip_id:
                    if await session.get(Dataclip, params.output_dataclip_id) is not None:
                        output_id = params.output_dataclip_id

                result = await session.execute(
                    update(Step)
                    .where(
                        Step.id == params.step_id,
                        Step.started_at.is_not(None),
                        Step.finished_at.is_(None),
                    )
                    .values(
                        exit_reason=params.reason,
                        error_type=params.error_type,
                        error_message=params.error_message,
                        output_dataclip_id=output_id,
                        finished_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise ValidationError.single("step_id", "already completed")
                await session.commit()
                return await session.get(Step, params.step_id, populate_existing=True)

        step = await self.store.with_contention_retry(op)
        logger.info(f"Step {step.id} finished with {step.exit_reason} in run {run_id}")
        await self.events.step_completed(run_id, step, context.project_id)
        return step

    # ------------------------------------------------------------------
    # Logs

    async def append_log(
        self, run_id: str, params: LogParams, scrubber: Optional[Scrubber] = None
    ) -> LogLine:
        async with self.store.session() as session:
            if params.step_id and await session.get(RunStep, (run_id, params.step_id)) is None:
                raise ValidationError.single("step_id", "must be associated with the run")
            message = scrubber.scrub(params.message) if scrubber else params.message
            log_line = LogLine(
                run_id=run_id,
                step_id=params.step_id,
                source=params.source,
                level=params.level,
                message=message,
                timestamp=params.timestamp,
            )
            session.add(log_line)
            await session.commit()

        await self.events.log_appended(log_line)
        return log_line

    async def log_lines(self, run_id: str) -> List[LogLine]:
        async with self.store.session() as session:
            result = await session.execute(
                select(LogLine).where(LogLine.run_id == run_id).order_by(LogLine.timestamp)
            )
            return list(result.scalars())

    async def steps_for(self, run_id: str) -> List[Step]:
        async with self.store.session() as session:
            result = await session.execute(
                select(Step)
                .join(RunStep, RunStep.step_id == Step.id)
                .where(RunStep.run_id == run_id)
                .order_by(Step.inserted_at)
            )
            return list(result.scalars())
