"""Guards and the final draft update shared by both ESP send pipelines."""

from __future__ import annotations

from collections.abc import Collection
from datetime import datetime
from typing import TYPE_CHECKING, Any

from config import AppConfig
from models import (
    DeliveryResult,
    DraftStatus,
    EmailDraft,
    EspProvider,
    Integration,
    SendDraftPayload,
)
from pipeline.failures import PermanentTaskError, save_dead_letter
from pipeline.observability import StructuredLogger
from pipeline.repository import PipelineRepository

if TYPE_CHECKING:
    from pipeline.task_runtime import TaskContext

ACTION_SENT = "sent"
ACTION_SCHEDULED = "scheduled"


def load_sendable_draft(
    repository: PipelineRepository,
    payload: SendDraftPayload,
    allowed_statuses: Collection[DraftStatus],
) -> EmailDraft:
    """Fetch the draft owned by the payload's user and check it may be sent."""
    draft = repository.get_email_draft(payload.draft_id, user_id=payload.user_id)
    if draft is None:
        raise PermanentTaskError(
            f"Draft {payload.draft_id} not found for user {payload.user_id}"
        )
    if draft.status not in allowed_statuses:
        expected = " or ".join(f'"{status.value}"' for status in allowed_statuses)
        raise PermanentTaskError(
            f'Draft status is "{draft.status.value}", expected {expected}'
        )
    return draft


def require_integration(
    repository: PipelineRepository, user_id: str, provider: EspProvider
) -> Integration:
    integration = repository.get_integration(user_id, provider)
    if integration is None:
        raise PermanentTaskError(f"{provider.value} is not connected for user {user_id}")
    return integration


def finalize_delivery(
    *,
    ctx: TaskContext,
    repository: PipelineRepository,
    config: AppConfig,
    logger: StructuredLogger,
    draft: EmailDraft,
    provider: EspProvider,
    provider_id: str,
    schedule_time: str | None,
    now: datetime,
    extra_values: dict[str, Any] | None = None,
) -> DeliveryResult:
    """Write the post-send status; a failed write is logged as a desync, never raised.

    The provider side effect has already happened at this point, so retrying
    the task would send twice.
    """
    ctx.mark_status("updating_draft")
    if schedule_time:
        values: dict[str, Any] = {
            "status": DraftStatus.SCHEDULED.value,
            "scheduled_for": schedule_time,
            "sent_at": None,
        }
        action = ACTION_SCHEDULED
    else:
        values = {
            "status": DraftStatus.SENT.value,
            "sent_at": now.isoformat(),
            "scheduled_for": None,
        }
        action = ACTION_SENT
    values.update(extra_values or {})

    context = ctx.log_context.bind(user_id=draft.user_id, draft_id=draft.id)
    state_desync = False
    try:
        repository.update_email_draft(draft.id, values)
    except Exception as exc:  # noqa: BLE001
        state_desync = True
        logger.error(
            "delivery_state_desync",
            context=context,
            provider=provider.value,
            provider_id=provider_id,
            intended_values=values,
            error=str(exc),
        )
        save_dead_letter(
            failure_dir=config.failure_log_dir,
            stage=f"{provider.value}_state_desync",
            run_id=ctx.run_id,
            error=str(exc),
            payload={"draft_id": draft.id, "provider_id": provider_id, "values": values},
        )

    ctx.mark_status("completed")
    logger.info(
        "delivery_completed",
        context=context,
        provider=provider.value,
        provider_id=provider_id,
        action=action,
        schedule_time=schedule_time,
    )
    return DeliveryResult(
        draft_id=draft.id,
        provider=provider,
        provider_id=provider_id,
        action=action,
        scheduled_for=schedule_time,
        state_desync=state_desync,
    )
