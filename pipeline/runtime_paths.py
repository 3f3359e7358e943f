"""Runtime directory/database bootstrap helpers."""

from __future__ import annotations

from config import AppConfig
from pipeline.row_store import RowStore
from pipeline.run_state import TaskRunStore


def bootstrap_runtime_paths(config: AppConfig) -> tuple[RowStore, TaskRunStore]:
    """Create runtime directories and initialize both SQLite stores."""
    for db_path in (config.row_store_db_path, config.task_state_db_path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
    config.failure_log_dir.mkdir(parents=True, exist_ok=True)

    row_store = RowStore(config.row_store_db_path)
    row_store.initialize()
    task_store = TaskRunStore(config.task_state_db_path)
    task_store.initialize()
    return row_store, task_store
