"""Durable task runtime: named tasks, checkpointed runs, retries, and durable delays.

A task handler is a plain callable ``handler(ctx, payload) -> dict | None``.
Handlers record progress in ``ctx.checkpoint`` and call ``ctx.wait_for`` to
suspend. In durable mode the wait is persisted as a ``resume_at`` timestamp
and the handler is re-invoked by a later worker tick, possibly in another
process; in inline mode the wait sleeps in-process. A retry restarts the task
from the beginning with an empty checkpoint.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from config import AppConfig
from models import TaskRunRecord, TaskStatus
from pipeline.failures import (
    FailureKind,
    PermanentTaskError,
    TaskDurationExceeded,
    classify_failure,
    save_dead_letter,
)
from pipeline.observability import LogContext, StructuredLogger, get_logger
from pipeline.resilience import RetryPolicy
from pipeline.run_state import TaskRunStore


class UnknownTaskError(PermanentTaskError):
    """Raised when a trigger names a task that is not registered."""


class TaskSuspended(Exception):
    """Control-flow signal raised by a durable ``wait_for``; never an error."""

    def __init__(self, resume_at: datetime) -> None:
        super().__init__(f"suspended until {resume_at.isoformat()}")
        self.resume_at = resume_at


@dataclass(frozen=True)
class TaskDefinition:
    """A named task bound to its handler and retry schedule."""

    name: str
    handler: TaskHandler
    retry: RetryPolicy = RetryPolicy()
    max_duration_seconds: float | None = None


class TaskContext:
    """Per-invocation handle passed to task handlers."""

    def __init__(
        self,
        *,
        runtime: TaskRuntime,
        record: TaskRunRecord,
        durable: bool,
        max_duration_seconds: float,
    ) -> None:
        self._runtime = runtime
        self._durable = durable
        self._max_duration_seconds = max_duration_seconds
        self._started = runtime.clock()
        self._waited = 0.0
        self.run_id = record.run_id
        self.task_name = record.task_name
        self.attempt = record.attempt
        self.checkpoint: dict[str, Any] = dict(record.checkpoint)
        self.metadata: dict[str, Any] = dict(record.metadata)
        self.log_context = LogContext(run_id=record.run_id, task_name=record.task_name)

    def set_status(self, status: str) -> None:
        """Record the current step; also the per-step deadline check."""
        self.check_deadline()
        self.mark_status(status)

    def mark_status(self, status: str) -> None:
        """Record a step without the deadline check.

        Used once external side effects have happened: a retry from there
        would repeat them.
        """
        self.set_metadata(status=status)
        self._runtime.logger.info("task_step", context=self.log_context, status=status)

    def set_metadata(self, **values: Any) -> None:
        self.metadata.update(values)
        self._runtime.store.patch_metadata(self.run_id, values)

    def increment(self, key: str, amount: int = 1) -> int:
        value = int(self.metadata.get(key, 0)) + amount
        self.set_metadata(**{key: value})
        return value

    def save_checkpoint(self) -> None:
        self._runtime.store.save_checkpoint(self.run_id, self.checkpoint)

    def wait_for(self, seconds: float) -> None:
        """Suspend the task for ``seconds``.

        Durable mode persists the checkpoint and unwinds with ``TaskSuspended``;
        code after the call runs only in the next invocation, which must find
        its place again from ``checkpoint``.
        """
        self.save_checkpoint()
        if self._durable:
            raise TaskSuspended(self._runtime.now() + timedelta(seconds=seconds))
        before = self._runtime.clock()
        self._runtime.sleeper(seconds)
        self._waited += self._runtime.clock() - before

    def trigger(self, task_name: str, payload: dict[str, Any]) -> str:
        """Enqueue a child task run and return its run id."""
        record = self._runtime.trigger(task_name, payload, parent_run_id=self.run_id)
        return record.run_id

    def check_deadline(self) -> None:
        active = self._runtime.clock() - self._started - self._waited
        if active > self._max_duration_seconds:
            raise TaskDurationExceeded(
                f"{self.task_name} exceeded {self._max_duration_seconds:.0f}s of active execution"
            )


TaskHandler = Callable[[TaskContext, dict[str, Any]], dict[str, Any] | None]


class TaskRuntime:
    """Registry plus executor for durable task runs."""

    def __init__(
        self,
        *,
        config: AppConfig,
        store: TaskRunStore,
        logger: StructuredLogger | None = None,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._config = config
        self.store = store
        self.logger = logger or get_logger()
        self.sleeper = sleeper
        self.clock = clock
        self.now = now or (lambda: datetime.now(UTC))
        self._rng = rng
        self._definitions: dict[str, TaskDefinition] = {}

    def register(self, definition: TaskDefinition) -> None:
        if definition.name in self._definitions:
            raise ValueError(f"Task already registered: {definition.name}")
        self._definitions[definition.name] = definition

    def definition(self, task_name: str) -> TaskDefinition:
        try:
            return self._definitions[task_name]
        except KeyError as exc:
            raise UnknownTaskError(f"Unknown task: {task_name}") from exc

    @property
    def task_names(self) -> tuple[str, ...]:
        return tuple(sorted(self._definitions))

    def trigger(
        self,
        task_name: str,
        payload: dict[str, Any],
        *,
        parent_run_id: str | None = None,
        delay_seconds: float = 0.0,
    ) -> TaskRunRecord:
        """Enqueue a run for the worker."""
        task_name = str(task_name)
        self.definition(task_name)
        resume_at = self.now() + timedelta(seconds=delay_seconds) if delay_seconds else None
        record = self.store.create_run(
            task_name,
            payload,
            parent_run_id=parent_run_id,
            resume_at=resume_at,
        )
        self.logger.info(
            "task_triggered",
            context=LogContext(run_id=record.run_id, task_name=task_name),
            parent_run_id=parent_run_id,
        )
        return record

    def run_inline(self, task_name: str, payload: dict[str, Any]) -> TaskRunRecord:
        """Run a task to a terminal state in-process, sleeping through waits and backoff."""
        record = self.trigger(task_name, payload)
        while True:
            if not self.store.claim_run(record.run_id):
                raise RuntimeError(f"Run {record.run_id} was claimed by another worker")
            record = self._invoke(self.store.get_run(record.run_id) or record, durable=False)
            if record.status != TaskStatus.RETRYING:
                return record
            assert record.resume_at is not None
            delay = max((record.resume_at - self.now()).total_seconds(), 0.0)
            self.sleeper(delay)

    def process_due_runs(self, *, limit: int = 25) -> int:
        """Worker tick: claim and invoke every due run once. Returns runs invoked."""
        invoked = 0
        for record in self.store.list_due_runs(self.now(), limit=limit):
            if not self.store.claim_run(record.run_id):
                continue
            claimed = self.store.get_run(record.run_id)
            if claimed is None:
                continue
            self._invoke(claimed, durable=True)
            invoked += 1
        return invoked

    def recover_interrupted_runs(self) -> int:
        """Re-queue runs left RUNNING by a process that died mid-invocation."""
        recovered = 0
        for record in self.store.list_runs(status=TaskStatus.RUNNING):
            self.store.transition_run(
                record.run_id,
                TaskStatus.QUEUED,
                checkpoint=record.checkpoint,
                last_error="interrupted",
            )
            self.logger.info(
                "task_recovered",
                context=LogContext(run_id=record.run_id, task_name=record.task_name),
            )
            recovered += 1
        return recovered

    def _invoke(self, record: TaskRunRecord, *, durable: bool) -> TaskRunRecord:
        context = LogContext(run_id=record.run_id, task_name=record.task_name)
        try:
            definition = self.definition(record.task_name)
        except UnknownTaskError as exc:
            return self._finish_failed(record, TaskStatus.ABORTED, exc, context)

        ctx = TaskContext(
            runtime=self,
            record=record,
            durable=durable,
            max_duration_seconds=definition.max_duration_seconds
            or float(self._config.task_max_duration_seconds),
        )
        self.logger.info("task_started", context=context, attempt=record.attempt)

        try:
            result = definition.handler(ctx, record.payload)
        except TaskSuspended as suspended:
            self.logger.info("task_waiting", context=context, resume_at=suspended.resume_at)
            return self.store.transition_run(
                record.run_id,
                TaskStatus.WAITING,
                checkpoint=ctx.checkpoint,
                resume_at=suspended.resume_at,
            )
        except Exception as exc:  # noqa: BLE001
            return self._handle_failure(record, definition, ctx, exc, context)

        self.logger.info("task_completed", context=context, attempt=record.attempt)
        return self.store.transition_run(
            record.run_id,
            TaskStatus.COMPLETED,
            checkpoint=ctx.checkpoint,
            result=result or {},
        )

    def _handle_failure(
        self,
        record: TaskRunRecord,
        definition: TaskDefinition,
        ctx: TaskContext,
        exc: Exception,
        context: LogContext,
    ) -> TaskRunRecord:
        kind = classify_failure(exc)
        if kind == FailureKind.PERMANENT:
            return self._finish_failed(record, TaskStatus.ABORTED, exc, context, ctx.checkpoint)
        if kind == FailureKind.NON_RETRYABLE or record.attempt >= definition.retry.max_attempts:
            return self._finish_failed(record, TaskStatus.FAILED, exc, context, ctx.checkpoint)

        delay = definition.retry.delay_for(record.attempt, rng=self._rng)
        self.logger.error(
            "task_retry_scheduled",
            context=context,
            attempt=record.attempt,
            delay_seconds=round(delay, 3),
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return self.store.transition_run(
            record.run_id,
            TaskStatus.RETRYING,
            attempt=record.attempt + 1,
            checkpoint={},
            last_error=str(exc),
            resume_at=self.now() + timedelta(seconds=delay),
        )

    def _finish_failed(
        self,
        record: TaskRunRecord,
        status: TaskStatus,
        exc: Exception,
        context: LogContext,
        checkpoint: dict[str, Any] | None = None,
    ) -> TaskRunRecord:
        self.logger.error(
            "task_aborted" if status == TaskStatus.ABORTED else "task_failed",
            context=context,
            attempt=record.attempt,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        save_dead_letter(
            failure_dir=self._config.failure_log_dir,
            stage=record.task_name,
            run_id=record.run_id,
            error=str(exc),
            payload={"task_payload": record.payload, "checkpoint": checkpoint or {}},
        )
        return self.store.transition_run(
            record.run_id,
            status,
            checkpoint=checkpoint,
            last_error=str(exc),
        )
