"""Tests for the durable task runtime."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from config import AppConfig
from models import TaskStatus
from pipeline.failures import PermanentTaskError, ProviderHTTPError
from pipeline.resilience import RetryPolicy
from pipeline.run_state import TaskRunStore
from pipeline.task_runtime import (
    TaskContext,
    TaskDefinition,
    TaskRuntime,
    UnknownTaskError,
)


class _Clock:
    def __init__(self) -> None:
        self.current = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


def _runtime(app_config: AppConfig, clock: _Clock) -> TaskRuntime:
    store = TaskRunStore(app_config.task_state_db_path)
    store.initialize()
    return TaskRuntime(
        config=app_config,
        store=store,
        sleeper=clock.sleep,
        now=clock.now,
        rng=lambda: 0.0,
    )


def _waiting_handler(calls: list[dict[str, Any]]) -> Any:
    def handler(ctx: TaskContext, payload: dict[str, Any]) -> dict[str, Any]:
        calls.append(dict(ctx.checkpoint))
        if "step" not in ctx.checkpoint:
            ctx.checkpoint["step"] = "created"
            ctx.wait_for(5)
        return {"step": ctx.checkpoint["step"], "echo": payload["value"]}

    return handler


def test_run_inline_completes_and_records_result(app_config: AppConfig) -> None:
    clock = _Clock()
    runtime = _runtime(app_config, clock)
    runtime.register(
        TaskDefinition(name="echo", handler=lambda ctx, payload: {"value": payload["value"]})
    )

    record = runtime.run_inline("echo", {"value": 3})

    assert record.status == TaskStatus.COMPLETED
    assert record.result == {"value": 3}


def test_inline_wait_sleeps_in_process(app_config: AppConfig) -> None:
    clock = _Clock()
    runtime = _runtime(app_config, clock)
    calls: list[dict[str, Any]] = []
    runtime.register(TaskDefinition(name="waiter", handler=_waiting_handler(calls)))

    record = runtime.run_inline("waiter", {"value": "x"})

    assert record.status == TaskStatus.COMPLETED
    assert clock.sleeps == [5]
    assert len(calls) == 1


def test_durable_wait_suspends_and_resumes_from_checkpoint(app_config: AppConfig) -> None:
    clock = _Clock()
    runtime = _runtime(app_config, clock)
    calls: list[dict[str, Any]] = []
    runtime.register(TaskDefinition(name="waiter", handler=_waiting_handler(calls)))

    record = runtime.trigger("waiter", {"value": "x"})
    assert runtime.process_due_runs() == 1

    waiting = runtime.store.get_run(record.run_id)
    assert waiting is not None
    assert waiting.status == TaskStatus.WAITING
    assert waiting.checkpoint == {"step": "created"}
    assert waiting.resume_at == clock.current + timedelta(seconds=5)

    assert runtime.process_due_runs() == 0

    clock.advance(5)
    assert runtime.process_due_runs() == 1
    finished = runtime.store.get_run(record.run_id)
    assert finished is not None
    assert finished.status == TaskStatus.COMPLETED
    assert finished.result == {"step": "created", "echo": "x"}
    assert calls == [{}, {"step": "created"}]
    assert clock.sleeps == []


def test_retryable_failure_retries_with_empty_checkpoint(app_config: AppConfig) -> None:
    clock = _Clock()
    runtime = _runtime(app_config, clock)
    seen_checkpoints: list[dict[str, Any]] = []

    def flaky(ctx: TaskContext, payload: dict[str, Any]) -> dict[str, Any]:
        seen_checkpoints.append(dict(ctx.checkpoint))
        if ctx.attempt == 1:
            ctx.checkpoint["partial"] = True
            raise ConnectionError("network down")
        return {"attempt": ctx.attempt}

    runtime.register(
        TaskDefinition(
            name="flaky",
            handler=flaky,
            retry=RetryPolicy(max_attempts=3, factor=2.0, min_timeout_seconds=2),
        )
    )

    record = runtime.run_inline("flaky", {})

    assert record.status == TaskStatus.COMPLETED
    assert record.attempt == 2
    assert record.result == {"attempt": 2}
    assert seen_checkpoints == [{}, {}]
    assert clock.sleeps == [2]


def test_exhausted_retries_fail_and_write_dead_letter(app_config: AppConfig) -> None:
    clock = _Clock()
    runtime = _runtime(app_config, clock)
    attempts: list[int] = []

    def always_fails(ctx: TaskContext, payload: dict[str, Any]) -> None:
        attempts.append(ctx.attempt)
        raise TimeoutError("still down")

    runtime.register(
        TaskDefinition(name="doomed", handler=always_fails, retry=RetryPolicy(max_attempts=2))
    )

    record = runtime.run_inline("doomed", {"draft_id": "d1"})

    assert record.status == TaskStatus.FAILED
    assert attempts == [1, 2]
    assert record.last_error == "still down"
    dead_letters = list(app_config.failure_log_dir.glob("failure_*_doomed_*.json"))
    assert len(dead_letters) == 1
    body = json.loads(dead_letters[0].read_text(encoding="utf-8"))
    assert body["payload"]["task_payload"] == {"draft_id": "d1"}


def test_permanent_error_aborts_without_retry(app_config: AppConfig) -> None:
    clock = _Clock()
    runtime = _runtime(app_config, clock)
    attempts: list[int] = []

    def guard(ctx: TaskContext, payload: dict[str, Any]) -> None:
        attempts.append(ctx.attempt)
        raise PermanentTaskError('Draft status is "pending_review", expected "approved"')

    runtime.register(TaskDefinition(name="guarded", handler=guard))

    record = runtime.run_inline("guarded", {})

    assert record.status == TaskStatus.ABORTED
    assert attempts == [1]
    assert clock.sleeps == []
    assert list(app_config.failure_log_dir.glob("failure_*_guarded_*.json"))


def test_client_error_fails_without_retry(app_config: AppConfig) -> None:
    clock = _Clock()
    runtime = _runtime(app_config, clock)
    attempts: list[int] = []

    def rejected(ctx: TaskContext, payload: dict[str, Any]) -> None:
        attempts.append(ctx.attempt)
        raise ProviderHTTPError("mailchimp", 400, "invalid list")

    runtime.register(TaskDefinition(name="rejected", handler=rejected))

    record = runtime.run_inline("rejected", {})

    assert record.status == TaskStatus.FAILED
    assert attempts == [1]


def test_child_triggers_record_parent(app_config: AppConfig) -> None:
    clock = _Clock()
    runtime = _runtime(app_config, clock)
    runtime.register(TaskDefinition(name="child", handler=lambda ctx, payload: None))

    def parent(ctx: TaskContext, payload: dict[str, Any]) -> dict[str, Any]:
        return {"child_run_id": ctx.trigger("child", {"n": 1})}

    runtime.register(TaskDefinition(name="parent", handler=parent))

    record = runtime.run_inline("parent", {})

    assert record.result is not None
    child = runtime.store.get_run(record.result["child_run_id"])
    assert child is not None
    assert child.parent_run_id == record.run_id
    assert child.status == TaskStatus.QUEUED


def test_progress_metadata_is_persisted(app_config: AppConfig) -> None:
    clock = _Clock()
    runtime = _runtime(app_config, clock)

    def progress(ctx: TaskContext, payload: dict[str, Any]) -> None:
        ctx.set_status("generating_drafts")
        ctx.increment("drafts_completed")
        ctx.increment("drafts_completed")

    runtime.register(TaskDefinition(name="progress", handler=progress))

    record = runtime.run_inline("progress", {})

    stored = runtime.store.get_run(record.run_id)
    assert stored is not None
    assert stored.metadata == {"status": "generating_drafts", "drafts_completed": 2}


def test_unknown_task_trigger_raises(app_config: AppConfig) -> None:
    runtime = _runtime(app_config, _Clock())

    with pytest.raises(UnknownTaskError):
        runtime.trigger("missing-task", {})


def test_recover_interrupted_runs_requeues_running(app_config: AppConfig) -> None:
    clock = _Clock()
    runtime = _runtime(app_config, clock)
    runtime.register(TaskDefinition(name="echo", handler=lambda ctx, payload: {"ok": True}))
    record = runtime.trigger("echo", {})
    runtime.store.claim_run(record.run_id)

    assert runtime.recover_interrupted_runs() == 1
    assert runtime.process_due_runs() == 1
    finished = runtime.store.get_run(record.run_id)
    assert finished is not None
    assert finished.status == TaskStatus.COMPLETED
