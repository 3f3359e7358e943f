"""Tests for structured log events."""

from __future__ import annotations

import json

import pytest

from pipeline.observability import LogContext, StructuredLogger


def test_bind_routes_known_fields_and_keeps_extras() -> None:
    context = LogContext(run_id="run_1", task_name="send-to-mailchimp")

    bound = context.bind(user_id="user-1", campaign_id="camp-1").bind(draft_id="d1")

    assert bound.user_id == "user-1"
    assert bound.draft_id == "d1"
    assert bound.extras == {"campaign_id": "camp-1"}
    assert context.user_id is None
    assert bound.as_fields() == {
        "run_id": "run_1",
        "task_name": "send-to-mailchimp",
        "user_id": "user-1",
        "draft_id": "d1",
        "campaign_id": "camp-1",
    }


def test_events_are_single_json_lines(caplog: pytest.LogCaptureFixture) -> None:
    logger = StructuredLogger()
    context = LogContext(run_id="run_1").bind(user_id="user-1")

    with caplog.at_level("INFO", logger="fundraising_pipeline"):
        logger.warning("topic_insert_failed", context=context, url="https://npr.org/a")

    record = caplog.records[-1]
    assert record.levelname == "WARNING"
    event = json.loads(record.getMessage())
    assert event["event"] == "topic_insert_failed"
    assert event["level"] == "warning"
    assert event["run_id"] == "run_1"
    assert event["user_id"] == "user-1"
    assert event["url"] == "https://npr.org/a"
    assert "draft_id" not in event
