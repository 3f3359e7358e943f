"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from config import AppConfig
from pipeline.observability import LogContext
from pipeline.repository import PipelineRepository
from pipeline.resilience import reset_circuit_breakers
from pipeline.row_store import RowStore


class RecordingTaskContext:
    """In-memory stand-in for ``TaskContext`` that records every call."""

    def __init__(self, *, run_id: str = "run_test", task_name: str = "test-task") -> None:
        self.run_id = run_id
        self.task_name = task_name
        self.attempt = 1
        self.checkpoint: dict[str, Any] = {}
        self.metadata: dict[str, Any] = {}
        self.log_context = LogContext(run_id=run_id, task_name=task_name)
        self.statuses: list[str] = []
        self.waits: list[float] = []
        self.triggered: list[tuple[str, dict[str, Any]]] = []
        self.fail_triggers_for: set[str] = set()

    def set_status(self, status: str) -> None:
        self.statuses.append(status)
        self.metadata["status"] = status

    def mark_status(self, status: str) -> None:
        self.set_status(status)

    def set_metadata(self, **values: Any) -> None:
        self.metadata.update(values)

    def increment(self, key: str, amount: int = 1) -> int:
        value = int(self.metadata.get(key, 0)) + amount
        self.metadata[key] = value
        return value

    def save_checkpoint(self) -> None:
        return None

    def wait_for(self, seconds: float) -> None:
        self.waits.append(seconds)

    def trigger(self, task_name: str, payload: dict[str, Any]) -> str:
        user_id = str(payload.get("user_id", ""))
        if user_id in self.fail_triggers_for:
            raise RuntimeError(f"trigger rejected for {user_id}")
        self.triggered.append((str(task_name), payload))
        return f"run_child_{len(self.triggered)}"

    def check_deadline(self) -> None:
        return None


@pytest.fixture(autouse=True)
def _isolated_circuit_breakers() -> Iterator[None]:
    reset_circuit_breakers()
    yield
    reset_circuit_breakers()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    data_dir = tmp_path / "data"
    return AppConfig(
        openai_api_key="sk-test",
        perplexity_api_key="pplx-test",
        newsapi_api_key=None,
        discovery_provider="sonar",
        openai_model="gpt-4o",
        embedding_model="text-embedding-3-small",
        row_store_db_path=data_dir / "row_store.db",
        task_state_db_path=data_dir / "task_state.db",
        failure_log_dir=data_dir / "failures",
        timezone="America/Chicago",
        weekly_drop_day="thu",
        weekly_drop_hour=12,
        discovery_interval_hours=4,
        delivery_send_hour=9,
        worker_poll_seconds=2,
        max_external_retries=3,
        task_max_duration_seconds=300,
        default_reply_to="noreply@example.com",
        research_vocabulary_path=None,
    )


@pytest.fixture
def row_store(app_config: AppConfig) -> RowStore:
    store = RowStore(app_config.row_store_db_path)
    store.initialize()
    return store


@pytest.fixture
def repository(row_store: RowStore) -> PipelineRepository:
    return PipelineRepository(row_store)


@pytest.fixture
def task_ctx() -> RecordingTaskContext:
    return RecordingTaskContext()
