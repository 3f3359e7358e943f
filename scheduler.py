"""APScheduler setup: weekly drop, research discovery, worker tick, and heartbeat jobs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import AppConfig
from models import TaskName
from pipeline.observability import StructuredLogger, get_logger
from pipeline.task_runtime import TaskRuntime

WEEKLY_JOB_ID = "weekly_draft_drop"
DISCOVERY_JOB_ID = "research_discovery"
WORKER_JOB_ID = "task_worker"
HEARTBEAT_JOB_ID = "pipeline_heartbeat"

# A weekly drop missed by up to an hour (restart, deploy) still runs.
MISFIRE_GRACE_SECONDS = {WEEKLY_JOB_ID: 3600}


@dataclass
class SchedulerRuntime:
    """Runtime wrapper around APScheduler jobs used by the worker process."""

    config: AppConfig
    runtime: TaskRuntime
    logger: StructuredLogger | None = None
    scheduler: BackgroundScheduler | None = None

    def start(self) -> None:
        """Re-queue interrupted runs, then start every recurring job."""
        logger = self.logger or get_logger()
        recovered = self.runtime.recover_interrupted_runs()
        if recovered:
            logger.info("scheduler_recovered_runs", recovered=recovered)

        timezone = ZoneInfo(self.config.timezone)
        scheduler = BackgroundScheduler(timezone=timezone)
        for job_id, func, trigger in self._jobs(timezone):
            scheduler.add_job(
                func,
                trigger=trigger,
                id=job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=MISFIRE_GRACE_SECONDS.get(job_id, 1),
            )
        scheduler.start()
        self.scheduler = scheduler
        logger.info(
            "scheduler_started",
            jobs=[job.id for job in scheduler.get_jobs()],
            timezone=self.config.timezone,
        )

    def _jobs(self, timezone: ZoneInfo) -> list[tuple[str, Callable[[], None], BaseTrigger]]:
        weekly = CronTrigger(
            day_of_week=self.config.weekly_drop_day,
            hour=self.config.weekly_drop_hour,
            minute=0,
            timezone=timezone,
        )
        return [
            (WEEKLY_JOB_ID, self._weekly_drop_job, weekly),
            (
                DISCOVERY_JOB_ID,
                self._discovery_job,
                IntervalTrigger(hours=self.config.discovery_interval_hours, timezone=timezone),
            ),
            (
                WORKER_JOB_ID,
                self._worker_job,
                IntervalTrigger(seconds=self.config.worker_poll_seconds, timezone=timezone),
            ),
            (HEARTBEAT_JOB_ID, self._heartbeat_job, IntervalTrigger(hours=24, timezone=timezone)),
        ]

    def shutdown(self) -> None:
        """Shutdown scheduler and wait for in-flight jobs to finish."""
        if self.scheduler is None:
            return
        self.scheduler.shutdown(wait=True)
        self.scheduler = None

    def next_weekly_run_at(self) -> datetime | None:
        """Return next scheduled weekly drop time."""
        if self.scheduler is None:
            return None
        job = self.scheduler.get_job(WEEKLY_JOB_ID)
        if job is None:
            return None
        if job.next_run_time is None:
            return None
        return job.next_run_time.astimezone(UTC)

    def _weekly_drop_job(self) -> None:
        self.runtime.trigger(TaskName.WEEKLY_DRAFT_DROP, {})

    def _discovery_job(self) -> None:
        self.runtime.trigger(TaskName.DISCOVER_RESEARCH, {})

    def _worker_job(self) -> None:
        self.runtime.process_due_runs()

    def _heartbeat_job(self) -> None:
        next_run = self.next_weekly_run_at()
        (self.logger or get_logger()).info(
            "scheduler_heartbeat",
            next_weekly_drop_at=next_run.isoformat() if next_run else None,
        )
