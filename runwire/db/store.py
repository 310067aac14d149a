from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from ..errors import InvalidTransition
from ..utils.retry import compute_backoff
from . import models  # noqa: F401  (registers tables on SQLModel.metadata)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunStore:
    """Async database helper shared by every orchestrator service."""

    def __init__(self, database_url: str, max_transition_retries: int = 3) -> None:
        connect_args = {}
        engine_kwargs = {}
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
            # one connection per session; nothing is cached across event loops
            engine_kwargs["poolclass"] = NullPool
        self.database_url = database_url
        self.max_transition_retries = max_transition_retries
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args, **engine_kwargs
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def add(self, *rows: SQLModel) -> None:
        """Insert rows in one transaction and refresh them."""
        async with self.session() as session:
            session.add_all(rows)
            await session.commit()
            for row in rows:
                await session.refresh(row)

    async def get(self, model: type[T], key: str) -> T | None:
        async with self.session() as session:
            return await session.get(model, key)

    async def with_contention_retry(self, op: Callable[[], Awaitable[T]]) -> T:
        """Run ``op`` again when the database reports lock contention.

        After ``max_transition_retries`` attempts the state is considered to
        have moved under the caller.
        """
        attempt = 0
        while True:
            try:
                return await op()
            except OperationalError as exc:
                attempt += 1
                if attempt > self.max_transition_retries:
                    logger.warning(f"Giving up after {attempt} contended attempts: {exc}")
                    raise InvalidTransition("state changed while updating") from exc
                await asyncio.sleep(compute_backoff(attempt))
