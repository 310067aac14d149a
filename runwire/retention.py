"""Retention policy decisions for dataclip payloads."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update

from .db import Dataclip, Project, RunStore, utcnow

logger = logging.getLogger(__name__)

# Step parameters that would persist payload references.
DATACLIP_PARAMS = ("output_dataclip", "output_dataclip_id", "input_dataclip_id")


class RetentionPolicy(str, Enum):
    RETAIN_ALL = "retain_all"
    ERASE_ALL = "erase_all"


def coerce_policy(policy: Optional[str]) -> RetentionPolicy:
    """Unknown or missing policies fall back to ``retain_all``."""
    try:
        return RetentionPolicy(policy or RetentionPolicy.RETAIN_ALL)
    except ValueError:
        logger.warning(f"Unknown retention policy {policy!r}; retaining payloads")
        return RetentionPolicy.RETAIN_ALL


def is_erase_all(policy: Optional[str]) -> bool:
    return coerce_policy(policy) is RetentionPolicy.ERASE_ALL


def include_output_dataclips(policy: Optional[str]) -> bool:
    return not is_erase_all(policy)


def drop_dataclips(params: Dict[str, Any], policy: Optional[str]) -> Dict[str, Any]:
    """Strip dataclip references from step params under ``erase_all``.

    The worker still sent (or received) the payload; it is just never linked
    to the step.
    """
    if not is_erase_all(policy):
        return params
    return {k: v for k, v in params.items() if k not in DATACLIP_PARAMS}


async def wipe_dataclip(store: RunStore, dataclip_id: str) -> bool:
    """Erase one dataclip's payload.

    Returns:
        ``True`` if this call wiped it, ``False`` if it was already wiped
        or does not exist.
    """
    async with store.session() as session:
        result = await session.execute(
            update(Dataclip)
            .where(Dataclip.id == dataclip_id, Dataclip.wiped_at.is_(None))
            .values(body=None, request=None, wiped_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    wiped = result.rowcount == 1
    if wiped:
        logger.info(f"Wiped dataclip_id={dataclip_id}")
    return wiped


async def wipe_dataclips_for_erase_all_projects(store: RunStore) -> List[str]:
    """Wipe every unwiped dataclip belonging to an ``erase_all`` project.

    Rows are kept; only ``body`` and ``request`` are cleared. Running the
    sweep again finds nothing to do.
    """
    async with store.session() as session:
        rows = await session.execute(
            select(Dataclip.id)
            .join(Project, Project.id == Dataclip.project_id)
            .where(
                Project.retention_policy == RetentionPolicy.ERASE_ALL.value,
                Dataclip.wiped_at.is_(None),
            )
        )
        ids = list(rows.scalars())

    wiped = [dataclip_id for dataclip_id in ids if await wipe_dataclip(store, dataclip_id)]
    if wiped:
        logger.info(f"Retention sweep wiped {len(wiped)} dataclip(s)")
    return wiped
