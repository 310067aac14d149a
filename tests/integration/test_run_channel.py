"""Run channel handlers driven directly, without a socket."""

import json
import time

import httpx
import pytest

from runwire.channels import RunChannel
from runwire.channels.protocol import Binary, encode_reply
from runwire.credentials import OAuthTokenClient
from runwire.db import Credential, Dataclip, Step
from runwire.errors import NotFound, Unauthorized
from runwire.runtime import build_runtime
from runwire.transports import InMemoryTransport


async def joined(harness, runtime, retention_policy="retain_all", topic_prefix="run:"):
    seeded = await harness.seed(retention_policy=retention_policy)
    run_id, token = await harness.claimed(seeded)
    channel = await RunChannel.join(runtime, f"{topic_prefix}{run_id}", {"token": token})
    return seeded, channel


@pytest.mark.asyncio
async def test_join_checks_token_against_topic(harness, runtime):
    seeded = await harness.seed()
    run_a, token_a = await harness.claimed(seeded)
    run_b, _ = await harness.claimed(seeded)

    with pytest.raises(Unauthorized):
        await RunChannel.join(runtime, f"run:{run_b}", {"token": token_a})
    with pytest.raises(Unauthorized):
        await RunChannel.join(runtime, f"run:{run_a}", {})

    token = runtime.tokens.generate_run_token("no-such-run", ttl_seconds=60)
    with pytest.raises(NotFound):
        await RunChannel.join(runtime, "run:no-such-run", {"token": token})

    channel = await RunChannel.join(runtime, f"run:{run_a}", {"token": token_a})
    assert channel.run_id == run_a


@pytest.mark.asyncio
async def test_fetch_run(harness, runtime):
    seeded, channel = await joined(harness, runtime)

    reply = await channel.handle_in("fetch:run", {})

    assert reply.status == "ok"
    body = reply.response
    assert body["id"] == channel.run_id
    assert body["starting_node_id"] == seeded.trigger.id
    assert {j["id"] for j in body["jobs"]} == {seeded.first.id, seeded.second.id, seeded.third.id}
    assert body["triggers"] == [{"id": seeded.trigger.id}]
    conditions = {e["target_job_id"]: e["condition"] for e in body["edges"]}
    assert conditions[seeded.second.id] == "on_job_success"
    assert conditions[seeded.third.id] == "state.data.ok"
    assert body["options"] == {"output_dataclips": True, "run_timeout_ms": 300_000}


@pytest.mark.asyncio
async def test_fetch_dataclip_under_erase_all_wipes_input(harness, runtime):
    _, channel = await joined(harness, runtime, retention_policy="erase_all")

    reply = await channel.handle_in("fetch:dataclip", None)
    assert isinstance(reply.response, Binary)
    assert json.loads(reply.response.data) == {"data": {"x": 1}, "request": {"method": "POST"}}

    dataclip = await runtime.store.get(Dataclip, channel.context.run.dataclip_id)
    assert dataclip.wiped_at is not None

    again = await channel.handle_in("fetch:dataclip", None)
    assert json.loads(encode_reply("1", "2", channel.topic, again))[4]["response"] is None


@pytest.mark.asyncio
async def test_fetch_credential(harness, runtime):
    seeded, channel = await joined(harness, runtime)

    reply = await channel.handle_in("fetch:credential", {"id": ""})
    assert reply.status == "error"
    assert reply.response == {"errors": {"id": ["This field can't be blank."]}}

    reply = await channel.handle_in("fetch:credential", {"id": "missing"})
    assert reply.response == {"errors": {"id": ["Credential not found!"]}}

    reply = await channel.handle_in("fetch:credential", {"id": seeded.credential.id})
    assert reply.status == "ok"
    assert reply.response == {"username": "u", "password": "p4ss"}
    assert "p4ss" in channel.scrubber.samples


@pytest.mark.asyncio
async def test_full_run_over_channel(harness, runtime):
    seeded, channel = await joined(harness, runtime)
    step_id = harness.step_id()

    assert (await channel.handle_in("run:start", {})).status == "ok"
    reply = await channel.handle_in(
        "step:start",
        {"step_id": step_id, "job_id": seeded.first.id, "input_dataclip_id": channel.context.run.dataclip_id},
    )
    assert reply.response == {"step_id": step_id}

    await channel.handle_in("fetch:credential", {"id": seeded.credential.id})
    reply = await channel.handle_in(
        "run:log",
        {"step_id": step_id, "message": ["using", "p4ss"], "timestamp": "1699444653874083"},
    )
    assert reply.status == "ok"
    assert "log_line_id" in reply.response

    reply = await channel.handle_in(
        "step:complete", {"step_id": step_id, "reason": "success", "output_dataclip": '{"done": true}'}
    )
    assert reply.response == {"step_id": step_id}
    assert (await channel.handle_in("run:complete", {"reason": "normal"})).status == "ok"

    assert channel.context.run.state == "success"
    (line,) = await runtime.runs.log_lines(channel.run_id)
    assert line.message == "using ***"


@pytest.mark.asyncio
async def test_erase_all_drops_dataclip_params(harness, runtime):
    seeded, channel = await joined(harness, runtime, retention_policy="erase_all")
    step_id = harness.step_id()
    await channel.handle_in("run:start", {})

    await channel.handle_in(
        "step:start",
        {"step_id": step_id, "job_id": seeded.first.id, "input_dataclip_id": channel.context.run.dataclip_id},
    )
    await channel.handle_in(
        "step:complete",
        {"step_id": step_id, "reason": "success", "output_dataclip": "{}", "output_dataclip_id": "x"},
    )

    step = await runtime.store.get(Step, step_id)
    assert step.input_dataclip_id is None
    assert step.output_dataclip_id is None


@pytest.mark.asyncio
async def test_legacy_worker_messages(harness, runtime):
    seeded, channel = await joined(harness, runtime, topic_prefix="attempt:")
    step_id = harness.step_id()

    assert (await channel.handle_in("attempt:start", {})).status == "ok"
    reply = await channel.handle_in("run:start", {"run_id": step_id, "job_id": seeded.first.id})
    assert reply.response == {"step_id": step_id}
    reply = await channel.handle_in("run:complete", {"run_id": step_id, "reason": "fail"})
    assert reply.status == "ok"
    assert (await channel.handle_in("attempt:complete", {"reason": "fail"})).status == "ok"

    step = await runtime.store.get(Step, step_id)
    assert step.exit_reason == "fail"
    assert (await runtime.runs.get(channel.run_id)).state == "failed"


@pytest.mark.asyncio
async def test_error_replies(harness, runtime):
    _, channel = await joined(harness, runtime)

    reply = await channel.handle_in("run:complete", {"reason": "success"})
    assert reply.response == {"errors": {"state": ["cannot complete attempt that is not started"]}}

    await channel.handle_in("run:start", {})
    reply = await channel.handle_in("run:log", {"message": None})
    assert reply.response == {"errors": {"message": ["This field can't be blank."]}}

    reply = await channel.handle_in("step:start", ["not", "an", "object"])
    assert reply.status == "error"

    assert await channel.handle_in("no:such:event", {}) is None


@pytest.mark.asyncio
async def test_fetch_expired_oauth_credential(harness, config):
    expired = {"access_token": "old", "refresh_token": "r1", "expires_at": int(time.time()) - 60}
    seeded = await harness.seed(credential_schema="oauth", credential_body=expired)
    run_id, token = await harness.claimed(seeded)

    def token_endpoint(request):
        return httpx.Response(200, json={"access_token": "new", "expires_in": 3600})

    runtime = build_runtime(
        config,
        transport=InMemoryTransport(),
        oauth_client=OAuthTokenClient(transport=httpx.MockTransport(token_endpoint)),
    )
    channel = await RunChannel.join(runtime, f"run:{run_id}", {"token": token})

    reply = await channel.handle_in("fetch:credential", {"id": seeded.credential.id})

    assert reply.status == "ok"
    assert reply.response["access_token"] == "new"
    assert reply.response["expires_at"] > time.time() + 3000
    stored = await runtime.store.get(Credential, seeded.credential.id)
    assert stored.body == reply.response


@pytest.mark.asyncio
async def test_completion_replies_ok_when_events_fail(harness, runtime, monkeypatch):
    seeded, channel = await joined(harness, runtime)
    step_id = harness.step_id()
    await channel.handle_in("run:start", {})
    await channel.handle_in("step:start", {"step_id": step_id, "job_id": seeded.first.id})

    async def broken(topic, message):
        raise ConnectionError("broker down")

    monkeypatch.setattr(runtime.transport, "publish", broken)

    reply = await channel.handle_in("step:complete", {"step_id": step_id, "reason": "success"})
    assert reply.response == {"step_id": step_id}
    assert (await channel.handle_in("run:complete", {"reason": "normal"})).status == "ok"
    assert (await runtime.runs.get(channel.run_id)).state == "success"
