"""Tests for the weekly draft fan-out."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from config import AppConfig
from models import TaskName, TaskStatus
from pipeline.orchestrator import WeeklyDropOrchestrator
from pipeline.repository import PipelineRepository
from pipeline.row_store import RowStore
from pipeline.run_state import TaskRunStore
from pipeline.task_runtime import TaskDefinition, TaskRuntime

THURSDAY_NOON = datetime(2026, 3, 5, 18, 0, tzinfo=UTC)


def _subscribe(row_store: RowStore, user_id: str, tier: str, per_week: int, status: str) -> None:
    row_store.insert(
        "subscriptions",
        {
            "user_id": user_id,
            "tier": tier,
            "emails_per_week": per_week,
            "rapid_response": tier == "pro",
            "status": status,
        },
    )


def _orchestrator(repository: PipelineRepository) -> WeeklyDropOrchestrator:
    return WeeklyDropOrchestrator(repository=repository, now=lambda: THURSDAY_NOON)


def test_triggers_one_generation_run_per_active_subscriber(
    row_store: RowStore, repository: PipelineRepository, task_ctx: Any
) -> None:
    _subscribe(row_store, "user-a", "starter", 2, "active")
    _subscribe(row_store, "user-b", "pro", 5, "active")
    _subscribe(row_store, "user-c", "starter", 2, "canceled")

    result = _orchestrator(repository).run(task_ctx)

    assert result.to_dict() == {"week_of": "2026-03-02", "total": 2, "succeeded": 2, "failed": 0}
    assert {task for task, _ in task_ctx.triggered} == {TaskName.GENERATE_USER_DRAFTS.value}
    payloads = {payload["user_id"]: payload for _, payload in task_ctx.triggered}
    assert set(payloads) == {"user-a", "user-b"}
    assert payloads["user-b"] == {
        "user_id": "user-b",
        "tier": "pro",
        "emails_to_generate": 5,
        "week_of": "2026-03-02",
    }
    assert task_ctx.metadata["processed_users"] == 2
    assert task_ctx.metadata["total_users"] == 2
    assert task_ctx.statuses[-1] == "completed"


def test_failed_trigger_is_counted_and_others_continue(
    row_store: RowStore, repository: PipelineRepository, task_ctx: Any
) -> None:
    _subscribe(row_store, "user-a", "starter", 2, "active")
    _subscribe(row_store, "user-b", "starter", 2, "active")
    task_ctx.fail_triggers_for.add("user-a")

    result = _orchestrator(repository).run(task_ctx)

    assert result.total == 2
    assert result.succeeded == 1
    assert result.failed == 1
    assert [payload["user_id"] for _, payload in task_ctx.triggered] == ["user-b"]
    assert task_ctx.metadata["processed_users"] == 2


def test_no_subscribers_completes_with_zero_totals(
    repository: PipelineRepository, task_ctx: Any
) -> None:
    result = _orchestrator(repository).run(task_ctx)

    assert result.to_dict() == {"week_of": "2026-03-02", "total": 0, "succeeded": 0, "failed": 0}
    assert task_ctx.triggered == []
    assert task_ctx.statuses == ["loading_subscriptions", "completed"]


def test_fan_out_past_the_deadline_triggers_each_user_once(
    app_config: AppConfig, row_store: RowStore, repository: PipelineRepository
) -> None:
    _subscribe(row_store, "user-a", "starter", 2, "active")
    _subscribe(row_store, "user-b", "starter", 2, "active")
    elapsed = {"seconds": 0.0}

    class _SlowTriggerRuntime(TaskRuntime):
        def trigger(self, task_name: str, payload: dict[str, Any], **kwargs: Any) -> Any:
            elapsed["seconds"] += app_config.task_max_duration_seconds / 2 + 50
            return super().trigger(task_name, payload, **kwargs)

    store = TaskRunStore(app_config.task_state_db_path)
    store.initialize()
    runtime = _SlowTriggerRuntime(
        config=app_config,
        store=store,
        sleeper=lambda seconds: None,
        clock=lambda: elapsed["seconds"],
        now=lambda: THURSDAY_NOON,
    )
    orchestrator = _orchestrator(repository)
    runtime.register(
        TaskDefinition(
            name=TaskName.WEEKLY_DRAFT_DROP.value,
            handler=lambda ctx, payload: orchestrator.run(ctx).to_dict(),
        )
    )
    runtime.register(
        TaskDefinition(name=TaskName.GENERATE_USER_DRAFTS.value, handler=lambda ctx, p: None)
    )

    record = runtime.run_inline(TaskName.WEEKLY_DRAFT_DROP.value, {})

    assert record.status == TaskStatus.COMPLETED
    assert record.attempt == 1
    children = store.list_runs(task_name=TaskName.GENERATE_USER_DRAFTS.value)
    assert sorted(child.payload["user_id"] for child in children) == ["user-a", "user-b"]
