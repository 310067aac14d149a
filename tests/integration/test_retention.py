"""Retention policy enforcement."""

import pytest

from runwire.db import Dataclip
from runwire.retention import (
    coerce_policy,
    drop_dataclips,
    include_output_dataclips,
    wipe_dataclip,
    wipe_dataclips_for_erase_all_projects,
)


def test_policy_helpers():
    assert coerce_policy(None) == "retain_all"
    assert coerce_policy("something_new") == "retain_all"
    assert include_output_dataclips("retain_all")
    assert not include_output_dataclips("erase_all")


def test_drop_dataclips_only_under_erase_all():
    params = {
        "step_id": "s1",
        "reason": "success",
        "output_dataclip": "{}",
        "output_dataclip_id": "d1",
        "input_dataclip_id": "d0",
    }
    assert drop_dataclips(params, "retain_all") == params
    assert drop_dataclips(params, "erase_all") == {"step_id": "s1", "reason": "success"}


@pytest.mark.asyncio
async def test_wipe_dataclip_is_idempotent(harness, runtime):
    seeded = await harness.seed()
    _, run = await harness.work_order(seeded)

    assert await wipe_dataclip(runtime.store, run.dataclip_id) is True
    assert await wipe_dataclip(runtime.store, run.dataclip_id) is False
    assert await wipe_dataclip(runtime.store, "missing") is False

    dataclip = await runtime.store.get(Dataclip, run.dataclip_id)
    assert dataclip.body is None
    assert dataclip.request is None
    assert dataclip.wiped_at is not None


@pytest.mark.asyncio
async def test_sweep_wipes_erase_all_projects_only(harness, runtime):
    erased = await harness.seed(retention_policy="erase_all")
    _, erased_run = await harness.work_order(erased)
    kept = await harness.seed(retention_policy="retain_all")
    _, kept_run = await harness.work_order(kept)

    assert await wipe_dataclips_for_erase_all_projects(runtime.store) == [erased_run.dataclip_id]
    assert await wipe_dataclips_for_erase_all_projects(runtime.store) == []

    assert (await runtime.store.get(Dataclip, erased_run.dataclip_id)).wiped_at is not None
    assert (await runtime.store.get(Dataclip, kept_run.dataclip_id)).body == '{"x": 1}'
