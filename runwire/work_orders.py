"""Creating work orders, retrying runs and deriving work order state."""

from __future__ import annotations

import json
import logging
from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .constants import DEFAULT_RUN_TIMEOUT_MS
from .db import (
    Dataclip,
    Edge,
    Job,
    ProjectUser,
    Run,
    RunStep,
    RunStore,
    Step,
    Trigger,
    WorkOrder,
    Workflow,
    utcnow,
)
from .errors import NotFound, Unauthorized, ValidationError
from .events import RunEvents
from .state import WorkOrderState, work_order_state

logger = logging.getLogger(__name__)

PRIORITY_IMMEDIATE = 0
PRIORITY_NORMAL = 1

# Roles allowed to start manual runs and retries.
RUNNER_ROLES = frozenset({"editor", "admin", "owner"})


def _as_text(payload: Any) -> Optional[str]:
    if payload is None or isinstance(payload, str):
        return payload
    return json.dumps(payload)


async def refresh_work_order_state(session: AsyncSession, work_order_id: str) -> WorkOrder:
    """Recompute and store a work order's aggregate state from its runs.

    The caller commits.
    """
    work_order = await session.get(WorkOrder, work_order_id, populate_existing=True)
    if work_order is None:
        raise NotFound(f"work order {work_order_id} not found")
    rows = await session.execute(
        select(Run.state)
        .where(Run.work_order_id == work_order_id)
        .order_by(Run.inserted_at, Run.id)
    )
    state = work_order_state(rows.scalars())
    if work_order.state != state.value:
        logger.info(f"Work order {work_order_id} {work_order.state} -> {state.value}")
    work_order.state = state.value
    work_order.last_activity = utcnow()
    session.add(work_order)
    return work_order


def downstream_jobs(edges: Iterable[Edge], job_id: str) -> Set[str]:
    """``job_id`` plus every job reachable from it over enabled edges."""
    children: Dict[str, List[str]] = {}
    for edge in edges:
        if edge.source_job_id and edge.enabled:
            children.setdefault(edge.source_job_id, []).append(edge.target_job_id)

    seen = {job_id}
    queue = deque([job_id])
    while queue:
        for child in children.get(queue.popleft(), []):
            if child not in seen:
                seen.add(child)
                queue.append(child)
    return seen


class WorkOrderService:
    """Entry points that put new runs on the queue."""

    def __init__(
        self,
        store: RunStore,
        events: RunEvents,
        default_run_timeout_ms: int = DEFAULT_RUN_TIMEOUT_MS,
    ) -> None:
        self.store = store
        self.events = events
        self.default_run_timeout_ms = default_run_timeout_ms

    def _run_options(self) -> Dict[str, Any]:
        return {"run_timeout_ms": self.default_run_timeout_ms}

    async def _publish(self, run: Run, project_id: str) -> None:
        await self.events.run_updated(run, project_id)

    # ------------------------------------------------------------------
    async def create_for_trigger(
        self,
        trigger_id: str,
        body: Any,
        request: Any = None,
        dataclip_type: str = "http_request",
    ) -> Tuple[WorkOrder, Run]:
        """Create a work order and its first run for a fired trigger.

        Args:
            trigger_id: The trigger that fired.
            body: Incoming payload, as raw JSON text or a JSON-able value.
            request: Optional request metadata (headers, method, path).
            dataclip_type: ``http_request``, ``kafka`` or ``global``.
        """
        async with self.store.session() as session:
            trigger = await session.get(Trigger, trigger_id)
            if trigger is None:
                raise NotFound("Trigger not found!")
            if not trigger.enabled:
                raise ValidationError.single("trigger_id", "is disabled")
            workflow = await session.get(Workflow, trigger.workflow_id)

            dataclip = Dataclip(
                project_id=workflow.project_id,
                type=dataclip_type,
                body=_as_text(body),
                request=_as_text(request),
            )
            work_order = WorkOrder(
                workflow_id=workflow.id, trigger_id=trigger.id, dataclip_id=dataclip.id
            )
            run = Run(
                work_order_id=work_order.id,
                starting_trigger_id=trigger.id,
                dataclip_id=dataclip.id,
                priority=PRIORITY_NORMAL,
                options=self._run_options(),
            )
            session.add_all([dataclip, work_order])
            await session.flush()
            session.add(run)
            await session.flush()
            work_order = await refresh_work_order_state(session, work_order.id)
            await session.commit()

        logger.info(f"Created work order {work_order.id} with run {run.id} from trigger {trigger_id}")
        await self._publish(run, workflow.project_id)
        return work_order, run

    async def create_manual(
        self,
        job_id: str,
        body: Any,
        created_by_id: str,
    ) -> Tuple[WorkOrder, Run]:
        """Start a workflow at ``job_id`` with a custom input, ahead of the queue."""
        async with self.store.session() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise ValidationError.single("job_id", "Job not found!")
            workflow = await session.get(Workflow, job.workflow_id)
            await self._authorize(session, workflow.project_id, created_by_id)

            dataclip = Dataclip(
                project_id=workflow.project_id, type="saved_input", body=_as_text(body)
            )
            work_order = WorkOrder(workflow_id=workflow.id, dataclip_id=dataclip.id)
            run = Run(
                work_order_id=work_order.id,
                starting_job_id=job.id,
                dataclip_id=dataclip.id,
                created_by_id=created_by_id,
                priority=PRIORITY_IMMEDIATE,
                options=self._run_options(),
            )
            session.add_all([dataclip, work_order])
            await session.flush()
            session.add(run)
            await session.flush()
            work_order = await refresh_work_order_state(session, work_order.id)
            await session.commit()

        logger.info(f"Created manual work order {work_order.id} with run {run.id} at job {job_id}")
        await self._publish(run, workflow.project_id)
        return work_order, run

    async def retry(
        self, run_id: str, step_id: str, created_by_id: Optional[str] = None
    ) -> Run:
        """Re-run a work order starting from one of ``run_id``'s steps.

        Steps of the original run whose jobs are not downstream of the
        retried step are linked to the new run unchanged.
        """
        async with self.store.session() as session:
            run = await session.get(Run, run_id)
            if run is None:
                raise NotFound("Run not found!")
            linked = await session.get(RunStep, (run_id, step_id))
            step = await session.get(Step, step_id) if linked else None
            if step is None:
                raise ValidationError.single("step_id", "must be associated with the run")

            work_order = await session.get(WorkOrder, run.work_order_id)
            workflow = await session.get(Workflow, work_order.workflow_id)
            if created_by_id is not None:
                await self._authorize(session, workflow.project_id, created_by_id)

            dataclip = (
                await session.get(Dataclip, step.input_dataclip_id)
                if step.input_dataclip_id
                else None
            )
            if dataclip is None or dataclip.wiped_at is not None:
                raise ValidationError.single(
                    "input_dataclip_id", "input for this step is not available"
                )

            edges = await session.execute(select(Edge).where(Edge.workflow_id == workflow.id))
            rerun = downstream_jobs(edges.scalars(), step.job_id)
            previous = await session.execute(
                select(Step)
                .join(RunStep, RunStep.step_id == Step.id)
                .where(RunStep.run_id == run_id)
            )
            reused = [s for s in previous.scalars() if s.job_id not in rerun]

            new_run = Run(
                work_order_id=work_order.id,
                starting_job_id=step.job_id,
                dataclip_id=dataclip.id,
                created_by_id=created_by_id,
                priority=PRIORITY_IMMEDIATE,
                options=dict(run.options or self._run_options()),
            )
            session.add(new_run)
            await session.flush()
            session.add_all(RunStep(run_id=new_run.id, step_id=s.id) for s in reused)
            await refresh_work_order_state(session, work_order.id)
            await session.commit()

        logger.info(
            f"Retrying run {run_id} from step {step_id} as run {new_run.id} "
            f"reusing {len(reused)} step(s)"
        )
        await self._publish(new_run, workflow.project_id)
        return new_run

    async def _authorize(self, session: AsyncSession, project_id: str, user_id: str) -> None:
        result = await session.execute(
            select(ProjectUser.role).where(
                ProjectUser.project_id == project_id, ProjectUser.user_id == user_id
            )
        )
        role = result.scalars().first()
        if role not in RUNNER_ROLES:
            raise Unauthorized()

    # ------------------------------------------------------------------
    async def update_state(self, work_order_id: str) -> WorkOrderState:
        async with self.store.session() as session:
            work_order = await refresh_work_order_state(session, work_order_id)
            await session.commit()
        return WorkOrderState(work_order.state)

    async def get(self, work_order_id: str) -> Optional[WorkOrder]:
        return await self.store.get(WorkOrder, work_order_id)

    async def list(
        self,
        workflow_id: Optional[str] = None,
        state: Optional[str] = None,
        limit: int = 50,
    ) -> List[WorkOrder]:
        query = select(WorkOrder).order_by(WorkOrder.inserted_at.desc()).limit(limit)
        if workflow_id:
            query = query.where(WorkOrder.workflow_id == workflow_id)
        if state:
            query = query.where(WorkOrder.state == state)
        async with self.store.session() as session:
            result = await session.execute(query)
            return list(result.scalars())

    async def runs_for(self, work_order_id: str) -> List[Run]:
        async with self.store.session() as session:
            result = await session.execute(
                select(Run).where(Run.work_order_id == work_order_id).order_by(Run.inserted_at)
            )
            return list(result.scalars())


__all__ = [
    "PRIORITY_IMMEDIATE",
    "PRIORITY_NORMAL",
    "WorkOrderService",
    "downstream_jobs",
    "refresh_work_order_state",
]
