"""Task run ledger persistence and transition helpers."""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from models import TaskRunRecord, TaskStatus


class RunStateError(RuntimeError):
    """Raised when run state operations fail or violate transitions."""


ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.QUEUED: {TaskStatus.RUNNING},
    TaskStatus.RUNNING: {
        TaskStatus.WAITING,
        TaskStatus.RETRYING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.ABORTED,
        TaskStatus.QUEUED,
    },
    TaskStatus.WAITING: {TaskStatus.RUNNING},
    TaskStatus.RETRYING: {TaskStatus.RUNNING},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.ABORTED: set(),
}

CLAIMABLE_STATUSES = (TaskStatus.QUEUED, TaskStatus.WAITING, TaskStatus.RETRYING)

_SELECT_COLUMNS = """
    run_id, task_name, status, attempt, payload_json, checkpoint_json, metadata_json,
    result_json, last_error, resume_at, parent_run_id, created_at, updated_at
"""


class TaskRunStore:
    """SQLite-backed ledger of task runs, their checkpoints and progress metadata."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def initialize(self) -> None:
        """Initialize SQLite tables if they do not exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS task_runs (
                    run_id TEXT PRIMARY KEY,
                    task_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempt INTEGER NOT NULL,
                    payload_json TEXT NOT NULL,
                    checkpoint_json TEXT NOT NULL,
                    metadata_json TEXT NOT NULL,
                    result_json TEXT,
                    last_error TEXT,
                    resume_at TEXT,
                    parent_run_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_task_runs_due
                ON task_runs (status, resume_at)
                """
            )

    def create_run(
        self,
        task_name: str,
        payload: dict[str, Any] | None = None,
        *,
        run_id: str | None = None,
        parent_run_id: str | None = None,
        resume_at: datetime | None = None,
    ) -> TaskRunRecord:
        """Create a queued run ledger row."""
        run_id = run_id or f"run_{uuid.uuid4().hex}"
        now = _now_iso()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO task_runs (
                        run_id,
                        task_name,
                        status,
                        attempt,
                        payload_json,
                        checkpoint_json,
                        metadata_json,
                        result_json,
                        last_error,
                        resume_at,
                        parent_run_id,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, 1, ?, '{}', '{}', NULL, NULL, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        task_name,
                        TaskStatus.QUEUED.value,
                        json.dumps(payload or {}, sort_keys=True),
                        _to_iso(resume_at),
                        parent_run_id,
                        now,
                        now,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise RunStateError(f"Run already exists: {run_id}") from exc

        return self._require_run(run_id)

    def get_run(self, run_id: str) -> TaskRunRecord | None:
        """Return run ledger record by run ID."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM task_runs WHERE run_id = ?",
                (run_id,),
            ).fetchone()
        if row is None:
            return None
        return _record_from_row(row)

    def claim_run(self, run_id: str) -> bool:
        """Atomically move a due run to RUNNING; False when another worker won."""
        placeholders = ", ".join("?" for _ in CLAIMABLE_STATUSES)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE task_runs
                SET status = ?, resume_at = NULL, updated_at = ?
                WHERE run_id = ? AND status IN ({placeholders})
                """,
                (
                    TaskStatus.RUNNING.value,
                    _now_iso(),
                    run_id,
                    *(status.value for status in CLAIMABLE_STATUSES),
                ),
            )
            return cursor.rowcount == 1

    def transition_run(
        self,
        run_id: str,
        next_status: TaskStatus,
        *,
        attempt: int | None = None,
        checkpoint: dict[str, Any] | None = None,
        result: dict[str, Any] | None = None,
        last_error: str | None = None,
        resume_at: datetime | None = None,
    ) -> TaskRunRecord:
        """Transition a run to its next status with transition validation."""
        current = self.get_run(run_id)
        if current is None:
            raise RunStateError(f"Run not found: {run_id}")

        allowed = ALLOWED_TRANSITIONS[current.status]
        if next_status not in allowed:
            raise RunStateError(
                f"Invalid transition for {run_id}: {current.status.value} -> {next_status.value}"
            )

        with self._connect() as conn:
            conn.execute(
                """
                UPDATE task_runs
                SET status = ?,
                    attempt = ?,
                    checkpoint_json = ?,
                    result_json = ?,
                    last_error = ?,
                    resume_at = ?,
                    updated_at = ?
                WHERE run_id = ?
                """,
                (
                    next_status.value,
                    attempt if attempt is not None else current.attempt,
                    json.dumps(
                        checkpoint if checkpoint is not None else current.checkpoint,
                        sort_keys=True,
                    ),
                    json.dumps(result, sort_keys=True, default=str) if result is not None else None,
                    last_error,
                    _to_iso(resume_at),
                    _now_iso(),
                    run_id,
                ),
            )

        return self._require_run(run_id)

    def save_checkpoint(self, run_id: str, checkpoint: dict[str, Any]) -> None:
        """Replace the persisted checkpoint for a run without changing status."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE task_runs
                SET checkpoint_json = ?, updated_at = ?
                WHERE run_id = ?
                """,
                (json.dumps(checkpoint, sort_keys=True, default=str), _now_iso(), run_id),
            )

    def patch_metadata(self, run_id: str, metadata_patch: dict[str, Any]) -> TaskRunRecord:
        """Merge progress metadata keys for a run without changing status."""
        current = self._require_run(run_id)
        merged = {**current.metadata, **metadata_patch}
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE task_runs
                SET metadata_json = ?, updated_at = ?
                WHERE run_id = ?
                """,
                (json.dumps(merged, sort_keys=True, default=str), _now_iso(), run_id),
            )
        return self._require_run(run_id)

    def list_due_runs(self, now: datetime, *, limit: int = 25) -> list[TaskRunRecord]:
        """Return claimable runs whose resume time has passed, oldest first."""
        placeholders = ", ".join("?" for _ in CLAIMABLE_STATUSES)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM task_runs
                WHERE status IN ({placeholders})
                  AND (resume_at IS NULL OR resume_at <= ?)
                ORDER BY COALESCE(resume_at, created_at) ASC
                LIMIT ?
                """,
                (*(status.value for status in CLAIMABLE_STATUSES), _to_iso(now), limit),
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def list_runs(
        self,
        *,
        status: TaskStatus | None = None,
        task_name: str | None = None,
    ) -> list[TaskRunRecord]:
        """Return run ledger records ordered by creation time."""
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if task_name is not None:
            clauses.append("task_name = ?")
            params.append(task_name)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM task_runs {where} ORDER BY created_at ASC",
                params,
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def _require_run(self, run_id: str) -> TaskRunRecord:
        record = self.get_run(run_id)
        if record is None:
            raise RunStateError(f"Run not found: {run_id}")
        return record

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()


def _record_from_row(row: sqlite3.Row) -> TaskRunRecord:
    return TaskRunRecord(
        run_id=row["run_id"],
        task_name=row["task_name"],
        status=TaskStatus(row["status"]),
        attempt=int(row["attempt"]),
        payload=json.loads(row["payload_json"]),
        checkpoint=json.loads(row["checkpoint_json"]),
        metadata=json.loads(row["metadata_json"]),
        result=json.loads(row["result_json"]) if row["result_json"] else None,
        last_error=row["last_error"],
        resume_at=_parse_iso(row["resume_at"]) if row["resume_at"] else None,
        parent_run_id=row["parent_run_id"],
        created_at=_parse_iso(row["created_at"]),
        updated_at=_parse_iso(row["updated_at"]),
    )


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)
