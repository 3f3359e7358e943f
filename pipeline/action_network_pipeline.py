"""Send an approved draft through Action Network: create, wait for targeting, dispatch."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from config import AppConfig
from models import DeliveryResult, DraftStatus, EspProvider, Integration, SendDraftPayload
from pipeline.action_network import ActionNetworkClient, ActionNetworkMessage
from pipeline.esp_delivery import finalize_delivery, load_sendable_draft, require_integration
from pipeline.failures import PollTimeoutError
from pipeline.observability import StructuredLogger, get_logger
from pipeline.repository import PipelineRepository

if TYPE_CHECKING:
    from pipeline.task_runtime import TaskContext

SENDABLE_STATUSES = (DraftStatus.APPROVED, DraftStatus.SCHEDULED)
MAX_POLL_ATTEMPTS = 30
POLL_INTERVAL_SECONDS = 5
DEFAULT_FROM_NAME = "Our Campaign"
DISPATCHED_MESSAGE_STATUSES = frozenset({"sending", "sent", "scheduled"})

ClientFactory = Callable[[Integration], ActionNetworkClient]


class ActionNetworkDelivery:
    """Per-draft Action Network state machine.

    Checkpoint keys: ``message_id`` and ``message_url`` once the message
    exists, ``poll_attempts`` while targeting is still calculating. A resumed
    invocation re-reads the message, and that read is the poll following the
    wait that suspended it.
    """

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

        ctx.set_status("fetching_credentials")
        integration = require_integration(
            self._repository, payload.user_id, EspProvider.ACTION_NETWORK
        )
        client = self._client_factory(integration)

        message_ref = ctx.checkpoint.get("message_url") or draft.action_network_message_id
        if message_ref:
            message = client.get_message(message_ref)
            self._logger.info(
                "action_network_message_reused",
                context=context,
                message_id=message.message_id,
                status=message.status,
                poll_attempts=ctx.checkpoint.get("poll_attempts", 0),
            )
        else:
            ctx.set_status("creating_message")
            kit = self._repository.get_brand_kit(payload.user_id)
            from_name = (kit.kit_name if kit else None) or DEFAULT_FROM_NAME
            reply_to = (
                draft.reply_to
                or integration.metadata.get("reply_to")
                or self._config.default_reply_to
            )
            message = client.create_message(
                subject=draft.subject_line or "",
                body=draft.body_html or draft.body_text or "",
                from_name=from_name,
                reply_to=reply_to,
            )
            self._repository.update_email_draft(
                draft.id, {"action_network_message_id": message.message_id}
            )
            self._logger.info(
                "action_network_message_created",
                context=context,
                message_id=message.message_id,
                status=message.status,
            )
        ctx.checkpoint.update(message_id=message.message_id, message_url=message.url)
        ctx.set_metadata(action_network_message_id=message.message_id)

        if message.status in DISPATCHED_MESSAGE_STATUSES:
            self._logger.warning(
                "action_network_already_dispatched",
                context=context,
                message_id=message.message_id,
                status=message.status,
            )
        else:
            message = self._wait_for_targeting(ctx, client, message)
            ctx.set_status("sending_or_scheduling")
            if payload.schedule_time:
                client.schedule(message, payload.schedule_time)
            else:
                client.send(message)

        return finalize_delivery(
            ctx=ctx,
            repository=self._repository,
            config=self._config,
            logger=self._logger,
            draft=draft,
            provider=EspProvider.ACTION_NETWORK,
            provider_id=message.message_id,
            schedule_time=payload.schedule_time,
            now=self._now(),
        )

    def _wait_for_targeting(
        self,
        ctx: TaskContext,
        client: ActionNetworkClient,
        message: ActionNetworkMessage,
    ) -> ActionNetworkMessage:
        ctx.set_status("polling_targeting")
        attempts = int(ctx.checkpoint.get("poll_attempts", 0))
        while message.calculating:
            if attempts >= MAX_POLL_ATTEMPTS:
                raise PollTimeoutError(
                    f"Targeting still calculating after {MAX_POLL_ATTEMPTS} polls "
                    f"(message_id: {message.message_id})"
                )
            attempts += 1
            ctx.checkpoint["poll_attempts"] = attempts
            ctx.set_metadata(poll_attempts=attempts)
            ctx.wait_for(POLL_INTERVAL_SECONDS)
            message = client.get_message(message.url)
        if message.total_targeted is not None:
            ctx.set_metadata(total_targeted=message.total_targeted)
        return message
