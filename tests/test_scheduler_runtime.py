"""Tests for APScheduler runtime wiring."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC
from typing import Any
from zoneinfo import ZoneInfo

from config import AppConfig
from models import TaskName
from scheduler import (
    DISCOVERY_JOB_ID,
    HEARTBEAT_JOB_ID,
    WEEKLY_JOB_ID,
    WORKER_JOB_ID,
    SchedulerRuntime,
)


@dataclass
class _FakeTaskRuntime:
    recover_calls: int = 0
    tick_calls: int = 0
    triggered: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def recover_interrupted_runs(self) -> int:
        self.recover_calls += 1
        return 0

    def trigger(self, task_name: str, payload: dict[str, Any]) -> Any:
        self.triggered.append((str(task_name), payload))
        return None

    def process_due_runs(self) -> int:
        self.tick_calls += 1
        return 0


def _runtime(app_config: AppConfig, tasks: _FakeTaskRuntime) -> SchedulerRuntime:
    return SchedulerRuntime(config=app_config, runtime=tasks)  # type: ignore[arg-type]


def test_scheduler_start_registers_jobs_and_recovers_runs(app_config: AppConfig) -> None:
    tasks = _FakeTaskRuntime()
    runtime = _runtime(app_config, tasks)

    runtime.start()
    try:
        assert tasks.recover_calls == 1
        assert runtime.scheduler is not None
        job_ids = {job.id for job in runtime.scheduler.get_jobs()}
        assert job_ids == {WEEKLY_JOB_ID, DISCOVERY_JOB_ID, WORKER_JOB_ID, HEARTBEAT_JOB_ID}
    finally:
        runtime.shutdown()
    assert runtime.scheduler is None


def test_scheduler_jobs_trigger_tasks(app_config: AppConfig) -> None:
    tasks = _FakeTaskRuntime()
    runtime = _runtime(app_config, tasks)

    runtime.start()
    try:
        runtime._weekly_drop_job()  # noqa: SLF001
        runtime._discovery_job()  # noqa: SLF001
        runtime._worker_job()  # noqa: SLF001
        runtime._heartbeat_job()  # noqa: SLF001

        assert tasks.triggered == [
            (TaskName.WEEKLY_DRAFT_DROP.value, {}),
            (TaskName.DISCOVER_RESEARCH.value, {}),
        ]
        assert tasks.tick_calls == 1
    finally:
        runtime.shutdown()


def test_next_weekly_run_is_utc_on_the_drop_day(app_config: AppConfig) -> None:
    runtime = _runtime(app_config, _FakeTaskRuntime())
    assert runtime.next_weekly_run_at() is None

    runtime.start()
    try:
        next_run = runtime.next_weekly_run_at()
        assert next_run is not None
        assert next_run.tzinfo == UTC
        local = next_run.astimezone(ZoneInfo(app_config.timezone))
        assert local.weekday() == 3
        assert local.hour == app_config.weekly_drop_hour
    finally:
        runtime.shutdown()
