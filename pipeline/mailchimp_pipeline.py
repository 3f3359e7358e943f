"""Send an approved draft through Mailchimp: campaign, content, checklist, dispatch."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from config import AppConfig
from models import DeliveryResult, DraftStatus, EspProvider, Integration, SendDraftPayload
from pipeline.esp_delivery import finalize_delivery, load_sendable_draft, require_integration
from pipeline.failures import PermanentTaskError, SendChecklistError
from pipeline.mailchimp import MailchimpClient
from pipeline.observability import StructuredLogger, get_logger
from pipeline.repository import PipelineRepository

if TYPE_CHECKING:
    from pipeline.task_runtime import TaskContext

SENDABLE_STATUSES = (DraftStatus.APPROVED,)
DEFAULT_FROM_NAME = "Campaign"
NO_SUBJECT = "(No Subject)"
DISPATCHED_CAMPAIGN_STATUSES = frozenset({"schedule", "sending", "sent"})

ClientFactory = Callable[[Integration], MailchimpClient]


class MailchimpDelivery:
    """Per-draft Mailchimp state machine."""

    def __init__(
        self,
        *,
        config: AppConfig,
        repository: PipelineRepository,
        client_factory: ClientFactory,
        logger: StructuredLogger | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._repository = repository
        self._client_factory = client_factory
        self._logger = logger or get_logger()
        self._now = now or (lambda: datetime.now(UTC))

    def run(self, ctx: TaskContext, payload: SendDraftPayload) -> DeliveryResult:
        context = ctx.log_context.bind(user_id=payload.user_id, draft_id=payload.draft_id)
        ctx.set_metadata(draft_id=payload.draft_id, schedule_time=payload.schedule_time)

        ctx.set_status("fetching_draft")
        draft = load_sendable_draft(self._repository, payload, SENDABLE_STATUSES)
        if not draft.body_html:
            raise PermanentTaskError(f"Draft {draft.id} has no HTML body")

        ctx.set_status("fetching_credentials")
        integration = require_integration(self._repository, payload.user_id, EspProvider.MAILCHIMP)
        if not integration.server_prefix or not integration.list_id:
            raise PermanentTaskError("Mailchimp integration is missing server_prefix or list_id")
        client = self._client_factory(integration)

        campaign_id = draft.mailchimp_campaign_id
        campaign_status: str | None = None
        if campaign_id:
            campaign_status = client.get_campaign_status(campaign_id)
            self._logger.info(
                "mailchimp_campaign_reused",
                context=context,
                campaign_id=campaign_id,
                status=campaign_status,
            )
        else:
            ctx.set_status("create_campaign")
            kit = self._repository.get_brand_kit(payload.user_id)
            profile = self._repository.get_profile(payload.user_id)
            from_name = (
                (kit.kit_name if kit else None)
                or (profile.organization_name if profile else None)
                or DEFAULT_FROM_NAME
            )
            reply_to = (profile.email if profile else None) or self._config.default_reply_to
            campaign_id = client.create_campaign(
                list_id=integration.list_id,
                subject_line=draft.subject_line or NO_SUBJECT,
                from_name=from_name,
                reply_to=reply_to,
            )
            self._repository.update_email_draft(draft.id, {"mailchimp_campaign_id": campaign_id})
            self._logger.info(
                "mailchimp_campaign_created", context=context, campaign_id=campaign_id
            )
        ctx.set_metadata(mailchimp_campaign_id=campaign_id)

        if campaign_status in DISPATCHED_CAMPAIGN_STATUSES:
            self._logger.warning(
                "mailchimp_campaign_already_dispatched",
                context=context,
                campaign_id=campaign_id,
                status=campaign_status,
            )
        else:
            self._dispatch(ctx, client, campaign_id, draft.body_html, payload)

        return finalize_delivery(
            ctx=ctx,
            repository=self._repository,
            config=self._config,
            logger=self._logger,
            draft=draft,
            provider=EspProvider.MAILCHIMP,
            provider_id=campaign_id,
            schedule_time=payload.schedule_time,
            now=self._now(),
            extra_values={"mailchimp_campaign_id": campaign_id},
        )

    def _dispatch(
        self,
        ctx: TaskContext,
        client: MailchimpClient,
        campaign_id: str,
        html: str,
        payload: SendDraftPayload,
    ) -> None:
        context = ctx.log_context.bind(user_id=payload.user_id, draft_id=payload.draft_id)
        ctx.set_status("set_content")
        client.set_content(campaign_id, html)

        ctx.set_status("validate_checklist")
        checklist = client.send_checklist(campaign_id)
        self._logger.info(
            "mailchimp_checklist",
            context=context,
            campaign_id=campaign_id,
            is_ready=checklist.is_ready,
            errors=len(checklist.errors),
            warnings=len(checklist.warnings),
        )
        if not checklist.is_ready:
            details = "; ".join(item.describe() for item in checklist.errors)
            self._logger.error(
                "mailchimp_checklist_failed",
                context=context,
                campaign_id=campaign_id,
                items=[item.describe() for item in checklist.items],
            )
            raise SendChecklistError(
                f"Mailchimp campaign {campaign_id} is not ready to send: {details or 'no details'}"
            )

        ctx.set_status("send_or_schedule")
        if payload.schedule_time:
            client.schedule(campaign_id, payload.schedule_time)
        else:
            client.send(campaign_id)
