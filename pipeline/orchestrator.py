"""Weekly fan-out: one draft generation run per active subscriber."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from models import FanOutResult, TaskName
from pipeline.draft_generation import current_week_of
from pipeline.observability import StructuredLogger, get_logger
from pipeline.repository import PipelineRepository

if TYPE_CHECKING:
    from pipeline.task_runtime import TaskContext


class WeeklyDropOrchestrator:
    """Trigger ``generate-user-drafts`` for every active subscription, sequentially."""

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        logger: StructuredLogger | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._logger = logger or get_logger()
        self._now = now or (lambda: datetime.now(UTC))

    def run(self, ctx: TaskContext) -> FanOutResult:
        ctx.set_status("loading_subscriptions")
        subscriptions = self._repository.list_active_subscriptions()
        week_of = current_week_of(self._now())
        if not subscriptions:
            self._logger.info("weekly_drop_no_subscribers", context=ctx.log_context)
            ctx.mark_status("completed")
            return FanOutResult(week_of=week_of, total=0, succeeded=0, failed=0)

        ctx.set_metadata(total_users=len(subscriptions), processed_users=0, week_of=week_of)
        ctx.set_status("processing")

        succeeded = 0
        failed = 0
        for subscription in subscriptions:
            context = ctx.log_context.bind(user_id=subscription.user_id)
            try:
                child_run_id = ctx.trigger(
                    TaskName.GENERATE_USER_DRAFTS,
                    {
                        "user_id": subscription.user_id,
                        "tier": subscription.tier,
                        "emails_to_generate": subscription.emails_per_week,
                        "week_of": week_of,
                    },
                )
            except Exception as exc:  # noqa: BLE001
                failed += 1
                self._logger.error("weekly_drop_trigger_failed", context=context, error=str(exc))
            else:
                succeeded += 1
                self._logger.info(
                    "weekly_drop_triggered",
                    context=context,
                    tier=subscription.tier,
                    emails=subscription.emails_per_week,
                    child_run_id=child_run_id,
                )
            ctx.increment("processed_users")

        ctx.mark_status("completed")
        result = FanOutResult(
            week_of=week_of,
            total=len(subscriptions),
            succeeded=succeeded,
            failed=failed,
        )
        self._logger.info("weekly_drop_completed", context=ctx.log_context, **result.to_dict())
        return result
