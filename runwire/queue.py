"""Handing available runs to workers, and sweeping runs workers abandoned."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import select, update

from .config import QueueConfig
from .db import Run, RunStore, utcnow
from .events import RunEvents
from .runs import RunService, run_timeout_ms
from .security import TokenAuthority
from .state import RunState
from .work_orders import refresh_work_order_state

logger = logging.getLogger(__name__)

# Extra candidates read per claim so a lost race can move on to the next run.
CANDIDATE_SLACK = 5


class ClaimedRun(BaseModel):
    id: str
    token: str


class ClaimQueue:
    """At-most-one-claimant queue over the ``run`` table.

    Claiming is ``UPDATE run SET state='claimed' WHERE id=? AND
    state='available'``; whoever gets rowcount 1 owns the run.
    """

    def __init__(
        self,
        store: RunStore,
        tokens: TokenAuthority,
        runs: RunService,
        events: RunEvents,
        config: Optional[QueueConfig] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.runs = runs
        self.events = events
        self.config = config or QueueConfig()

    async def claim(self, demand: int = 1, worker_name: Optional[str] = None) -> List[ClaimedRun]:
        """Claim up to ``demand`` runs, immediate priority first, oldest first.

        Returns an empty list when nothing is available.
        """
        if demand < 1:
            return []

        claimed: List[Run] = []
        # Lost candidates are no longer available, so each pass sees fresh ones.
        while len(claimed) < demand:
            candidate_ids = await self._candidates(demand - len(claimed) + CANDIDATE_SLACK)
            if not candidate_ids:
                break
            for run_id in candidate_ids:
                if len(claimed) >= demand:
                    break
                run = await self.store.with_contention_retry(
                    lambda run_id=run_id: self._claim_one(run_id, worker_name)
                )
                if run is not None:
                    claimed.append(run)

        result = []
        for run in claimed:
            ttl = self.tokens.run_token_ttl(run_timeout_ms(run))
            result.append(ClaimedRun(id=run.id, token=self.tokens.generate_run_token(run.id, ttl)))
            logger.info(f"Run {run.id} claimed by {worker_name or 'worker'}")
        return result

    async def _candidates(self, limit: int) -> List[str]:
        async with self.store.session() as session:
            candidates = await session.execute(
                select(Run.id)
                .where(Run.state == RunState.AVAILABLE.value)
                .order_by(Run.priority, Run.inserted_at)
                .limit(limit)
            )
            return list(candidates.scalars())

    async def _claim_one(self, run_id: str, worker_name: Optional[str]) -> Optional[Run]:
        async with self.store.session() as session:
            result = await session.execute(
                update(Run)
                .where(Run.id == run_id, Run.state == RunState.AVAILABLE.value)
                .values(
                    state=RunState.CLAIMED.value,
                    claimed_at=utcnow(),
                    worker_name=worker_name,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                logger.debug(f"Lost claim race for run {run_id}")
                return None
            run = await session.get(Run, run_id, populate_existing=True)
            await refresh_work_order_state(session, run.work_order_id)
            await session.commit()
        await self.events.run_updated(run)
        return run

    # ------------------------------------------------------------------
    # Sweeps

    async def requeue_unstarted(self, now: Optional[datetime] = None) -> List[str]:
        """Return runs claimed longer than the claim timeout to ``available``.

        Nobody is alerted; the run is simply handed out again on a later claim.
        """
        cutoff = (now or utcnow()) - timedelta(seconds=self.config.claim_timeout_seconds)
        async with self.store.session() as session:
            stale = await session.execute(
                select(Run.id).where(
                    Run.state == RunState.CLAIMED.value, Run.claimed_at < cutoff
                )
            )
            stale_ids = list(stale.scalars())

        requeued = []
        for run_id in stale_ids:
            async with self.store.session() as session:
                result = await session.execute(
                    update(Run)
                    .where(Run.id == run_id, Run.state == RunState.CLAIMED.value)
                    .values(state=RunState.AVAILABLE.value, claimed_at=None, worker_name=None)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                run = await session.get(Run, run_id, populate_existing=True)
                await refresh_work_order_state(session, run.work_order_id)
                await session.commit()
            requeued.append(run_id)
            await self.events.run_updated(run)
        if requeued:
            logger.info(f"Requeued {len(requeued)} unstarted run(s)")
        return requeued

    async def find_stalled(self, now: Optional[datetime] = None) -> List[Run]:
        """Started runs past their timeout plus grace period.

        Each one is reported as an operational alert.
        """
        now = now or utcnow()
        grace = timedelta(seconds=self.config.grace_period_seconds)
        async with self.store.session() as session:
            started = await session.execute(
                select(Run).where(Run.state == RunState.STARTED.value)
            )
            runs = list(started.scalars())

        stalled = [
            run
            for run in runs
            if run.started_at is not None
            and run.started_at + timedelta(milliseconds=run_timeout_ms(run)) + grace < now
        ]
        for run in stalled:
            logger.warning(
                f"Run {run.id} started at {run.started_at.isoformat()} has not finished "
                f"within {run_timeout_ms(run)}ms"
            )
            await self.events.run_stalled(run)
        return stalled

    async def mark_lost(self, now: Optional[datetime] = None) -> List[str]:
        """Finalize every stalled run as ``lost``."""
        lost = []
        for run in await self.find_stalled(now):
            if await self.runs.mark_lost(run) is not None:
                lost.append(run.id)
        return lost
