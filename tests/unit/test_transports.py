"""Transport and event publishing tests."""

import asyncio

import pytest

from runwire.db import Run
from runwire.events import RUN_UPDATED, RunEvent, RunEvents, project_topic, run_topic
from runwire.transports.inmemory import InMemoryTransport
from runwire.transports.redis import RedisTransport


@pytest.mark.asyncio
async def test_inmemory_transport_fans_out():
    transport = InMemoryTransport()
    event = RunEvent(event=RUN_UPDATED, run_id="run-1", payload={"state": "claimed"})

    async with transport.subscribe("runs:run-1") as first, transport.subscribe("runs:run-1") as second:
        assert transport.subscriber_count("runs:run-1") == 2
        await transport.publish("runs:run-1", event)
        assert (await asyncio.wait_for(anext(first), timeout=1)).payload["state"] == "claimed"
        assert (await asyncio.wait_for(anext(second), timeout=1)).run_id == "run-1"

    assert transport.subscriber_count("runs:run-1") == 0


@pytest.mark.asyncio
async def test_inmemory_transport_keeps_nothing_without_subscribers():
    transport = InMemoryTransport()
    for _ in range(20):
        await transport.publish("runs:run-1", RunEvent(event=RUN_UPDATED, run_id="run-1"))

    async with transport.subscribe("runs:run-1") as events:
        await transport.publish("runs:run-1", RunEvent(event="run_stalled", run_id="run-1"))
        assert (await asyncio.wait_for(anext(events), timeout=1)).event == "run_stalled"


@pytest.mark.asyncio
async def test_slow_subscriber_drops_overflow():
    transport = InMemoryTransport(max_pending=2)

    async with transport.subscribe("runs:run-1") as events:
        for n in range(5):
            await transport.publish(
                "runs:run-1", RunEvent(event=RUN_UPDATED, run_id="run-1", payload={"n": n})
            )
        received = [(await asyncio.wait_for(anext(events), timeout=1)).payload["n"] for _ in range(2)]

    assert received == [0, 1]


def test_event_json_round_trip():
    event = RunEvent(event=RUN_UPDATED, run_id="run-1", project_id="p-1")
    assert RunEvent.from_json(event.to_json()) == event


@pytest.mark.asyncio
async def test_run_events_fan_out_to_project():
    transport = InMemoryTransport()
    events = RunEvents(transport)
    run = Run(id="run-1", work_order_id="wo-1", state="started")

    async with events.subscribe_run("run-1") as on_run, events.subscribe_project("p-1") as on_project:
        await events.run_updated(run, project_id="p-1")
        await events.run_stalled(run)

        first = await asyncio.wait_for(anext(on_run), timeout=1)
        second = await asyncio.wait_for(anext(on_run), timeout=1)
        on_project_event = await asyncio.wait_for(anext(on_project), timeout=1)

    assert [first.event, second.event] == ["run_updated", "run_stalled"]
    assert first.payload["state"] == "started"
    assert on_project_event.event == "run_updated"
    assert transport.subscriber_count(run_topic("run-1")) == 0
    assert transport.subscriber_count(project_topic("p-1")) == 0


@pytest.mark.asyncio
async def test_publish_failure_is_logged_not_raised(caplog):
    class BrokenTransport(InMemoryTransport):
        async def publish(self, topic, message):
            raise ConnectionError("broker down")

    events = RunEvents(BrokenTransport())
    await events.run_updated(Run(id="run-1", work_order_id="wo-1", state="success"), project_id="p-1")

    assert "Failed to publish run_updated for run_id=run-1 on runs:run-1" in caplog.text
    assert "project:p-1" in caplog.text


def test_redis_transport_defaults():
    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert transport._key("runs:abc") == "runwire:runs:abc"
