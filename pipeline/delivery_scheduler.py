"""Assign approved drafts to upcoming delivery slots and hand them to the ESP task."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, time, timedelta
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import AppConfig
from models import EspProvider, TaskName
from pipeline.failures import PermanentTaskError
from pipeline.observability import StructuredLogger, get_logger
from pipeline.repository import PipelineRepository

if TYPE_CHECKING:
    from pipeline.task_runtime import TaskContext

WEEKDAY_INDEX = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}
DEFAULT_DELIVERY_DAYS = ("thursday",)
MIN_LEAD_TIME = timedelta(hours=1)

SEND_TASK_BY_PROVIDER = {
    EspProvider.MAILCHIMP: TaskName.SEND_TO_MAILCHIMP,
    EspProvider.ACTION_NETWORK: TaskName.SEND_TO_ACTION_NETWORK,
}


def next_delivery_dates(
    allowed_weekdays: Iterable[str],
    count: int,
    send_hour_local: int,
    timezone: str,
    now: datetime | None = None,
) -> list[datetime]:
    """Next ``count`` send times on allowed weekdays, in the given IANA zone.

    Scanning starts at today's local date; a slot is accepted only when it is
    more than one hour after ``now``. Unknown weekday names are ignored, and a
    list with none left yields ``[]``.
    """
    targets = {
        WEEKDAY_INDEX[day.strip().lower()]
        for day in allowed_weekdays
        if day.strip().lower() in WEEKDAY_INDEX
    }
    if not targets or count <= 0:
        return []

    zone = ZoneInfo(timezone)
    moment = (now or datetime.now(UTC)).astimezone(zone)
    earliest = moment + MIN_LEAD_TIME
    slot_time = time(hour=send_hour_local)

    dates: list[datetime] = []
    scan_date = moment.date()
    while len(dates) < count:
        if scan_date.weekday() in targets:
            candidate = datetime.combine(scan_date, slot_time, tzinfo=zone)
            if candidate > earliest:
                dates.append(candidate)
        scan_date += timedelta(days=1)
    return dates


class DeliveryScheduler:
    """Spread a user's approved drafts across their delivery days."""

    def __init__(
        self,
        *,
        config: AppConfig,
        repository: PipelineRepository,
        logger: StructuredLogger | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._repository = repository
        self._logger = logger or get_logger()
        self._now = now or (lambda: datetime.now(UTC))

    def schedule_user_deliveries(self, ctx: TaskContext, user_id: str) -> dict[str, Any]:
        context = ctx.log_context.bind(user_id=user_id)
        ctx.set_metadata(user_id=user_id)
        ctx.set_status("loading")

        profile = self._repository.get_profile(user_id)
        if profile is None:
            raise PermanentTaskError(f"Profile not found for user {user_id}")
        integration = self._repository.get_active_integration(user_id)
        if integration is None:
            raise PermanentTaskError(f"No active ESP integration for user {user_id}")

        delivery_days = profile.delivery_days or DEFAULT_DELIVERY_DAYS
        timezone = profile.timezone or self._config.timezone
        drafts = self._repository.list_approved_unscheduled_drafts(user_id)
        if not drafts:
            self._logger.info("delivery_nothing_to_schedule", context=context)
            ctx.mark_status("completed")
            return {"total": 0, "scheduled": 0, "unscheduled": [], "deliveries": []}

        ctx.set_metadata(drafts_to_schedule=len(drafts))
        ctx.set_status("calculating")
        try:
            dates = next_delivery_dates(
                delivery_days,
                len(drafts),
                self._config.delivery_send_hour,
                timezone,
                now=self._now(),
            )
        except ZoneInfoNotFoundError as exc:
            raise PermanentTaskError(f"Unknown timezone {timezone!r} for user {user_id}") from exc
        if len(dates) < len(drafts):
            self._logger.warning(
                "delivery_dates_short",
                context=context,
                needed=len(drafts),
                generated=len(dates),
                delivery_days=list(delivery_days),
            )

        ctx.set_status("scheduling")
        send_task = SEND_TASK_BY_PROVIDER[integration.provider]
        deliveries: list[dict[str, str]] = []
        unscheduled: list[str] = []
        for index, draft in enumerate(drafts):
            draft_context = context.bind(draft_id=draft.id)
            if index >= len(dates):
                unscheduled.append(draft.id)
                self._logger.warning("delivery_slot_missing", context=draft_context)
                continue

            scheduled_for = dates[index].astimezone(UTC).isoformat()
            self._repository.update_email_draft(draft.id, {"scheduled_for": scheduled_for})
            try:
                ctx.trigger(
                    send_task,
                    {"draft_id": draft.id, "user_id": user_id, "schedule_time": scheduled_for},
                )
            except Exception as exc:  # noqa: BLE001
                self._repository.update_email_draft(draft.id, {"scheduled_for": None})
                unscheduled.append(draft.id)
                self._logger.error(
                    "delivery_trigger_failed",
                    context=draft_context,
                    task=send_task.value,
                    error=str(exc),
                )
                continue

            deliveries.append({"draft_id": draft.id, "scheduled_for": scheduled_for})
            ctx.increment("scheduled_count")
            self._logger.info(
                "delivery_scheduled",
                context=draft_context,
                subject=draft.subject_line,
                scheduled_for=scheduled_for,
                task=send_task.value,
            )

        ctx.mark_status("completed")
        self._logger.info(
            "delivery_scheduling_completed",
            context=context,
            total=len(drafts),
            scheduled=len(deliveries),
        )
        return {
            "total": len(drafts),
            "scheduled": len(deliveries),
            "unscheduled": unscheduled,
            "deliveries": deliveries,
        }
