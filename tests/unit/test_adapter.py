"""Tests for translating messages from older workers."""

import logging

from runwire.channels.adapter import translate


def test_current_messages_pass_through():
    assert translate("run:r1", "run:start", {}) == ("run:start", {})
    assert translate("run:r1", "step:start", {"step_id": "s1"}) == (
        "step:start",
        {"step_id": "s1"},
    )
    assert translate("run:r1", "fetch:dataclip", None) == ("fetch:dataclip", None)


def test_attempt_events_become_run_events(caplog):
    with caplog.at_level(logging.WARNING):
        assert translate("attempt:r1", "attempt:start", {}) == ("run:start", {})
        assert translate("attempt:r1", "attempt:complete", {"reason": "normal"}) == (
            "run:complete",
            {"reason": "normal"},
        )
        assert translate("attempt:r1", "fetch:attempt", {}) == ("fetch:run", {})
    assert "v0.7.0" in caplog.text


def test_legacy_run_events_become_step_events():
    event, payload = translate("attempt:r1", "run:start", {"run_id": "s1", "job_id": "j1"})
    assert event == "step:start"
    assert payload == {"step_id": "s1", "job_id": "j1"}

    event, payload = translate("run:r1", "run:complete", {"run_id": "s1", "reason": "fail"})
    assert event == "step:complete"
    assert payload == {"step_id": "s1", "reason": "fail"}


def test_log_events_rename_step_reference(caplog):
    with caplog.at_level(logging.WARNING):
        assert translate("run:r1", "log", {"run_id": "s1", "message": "x"}) == (
            "run:log",
            {"step_id": "s1", "message": "x"},
        )
    assert caplog.text == ""

    assert translate("attempt:r1", "attempt:log", {"message": "x"}) == (
        "run:log",
        {"message": "x"},
    )
    assert translate("run:r1", "run:log", {"run_id": "s1", "message": "x"}) == (
        "run:log",
        {"step_id": "s1", "message": "x"},
    )
