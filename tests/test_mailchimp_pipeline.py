"""Tests for the Mailchimp send pipeline."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from config import AppConfig
from models import DraftStatus, EspProvider, SendDraftPayload
from pipeline.failures import PermanentTaskError, ProviderResponseError, SendChecklistError
from pipeline.mailchimp import ChecklistItem, SendChecklist, mailchimp_base_url, parse_checklist
from pipeline.mailchimp_pipeline import MailchimpDelivery
from pipeline.repository import PipelineRepository
from pipeline.row_store import RowStore

NOW = datetime(2026, 3, 5, 15, 0, tzinfo=UTC)
READY = SendChecklist(is_ready=True, items=())


class _FakeMailchimpClient:
    def __init__(self, checklist: SendChecklist = READY, campaign_status: str = "save") -> None:
        self.checklist = checklist
        self.campaign_status = campaign_status
        self.calls: list[tuple[str, Any]] = []

    def create_campaign(self, **kwargs: Any) -> str:
        self.calls.append(("create_campaign", kwargs))
        return "camp-1"

    def get_campaign_status(self, campaign_id: str) -> str:
        self.calls.append(("get_campaign_status", campaign_id))
        return self.campaign_status

    def set_content(self, campaign_id: str, html: str) -> None:
        self.calls.append(("set_content", (campaign_id, html)))

    def send_checklist(self, campaign_id: str) -> SendChecklist:
        self.calls.append(("send_checklist", campaign_id))
        return self.checklist

    def schedule(self, campaign_id: str, schedule_time: str) -> None:
        self.calls.append(("schedule", (campaign_id, schedule_time)))

    def send(self, campaign_id: str) -> None:
        self.calls.append(("send", campaign_id))

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


def _seed(
    row_store: RowStore,
    repository: PipelineRepository,
    *,
    list_id: str | None = "list-1",
    campaign_id: str | None = None,
) -> str:
    row_store.insert(
        "profiles",
        {"id": "user-1", "email": "jane@janedoe.org", "organization_name": "Jane Doe PAC"},
    )
    row_store.insert(
        "email_integrations",
        {
            "user_id": "user-1",
            "provider": "mailchimp",
            "access_token": "oauth-token",
            "server_prefix": "us21",
            "list_id": list_id,
            "is_active": True,
        },
    )
    draft = repository.insert_email_draft(
        {
            "user_id": "user-1",
            "status": DraftStatus.APPROVED.value,
            "draft_type": "weekly",
            "subject_line": "Matching gift ends tonight",
            "body_html": "<p>Double your impact</p>",
            "mailchimp_campaign_id": campaign_id,
        }
    )
    return draft.id


def _delivery(
    app_config: AppConfig, repository: PipelineRepository, client: _FakeMailchimpClient
) -> MailchimpDelivery:
    return MailchimpDelivery(
        config=app_config,
        repository=repository,
        client_factory=lambda integration: client,  # type: ignore[arg-type,return-value]
        now=lambda: NOW,
    )


def test_ready_campaign_is_sent_and_recorded(
    app_config: AppConfig,
    row_store: RowStore,
    repository: PipelineRepository,
    task_ctx: Any,
) -> None:
    draft_id = _seed(row_store, repository)
    client = _FakeMailchimpClient()

    result = _delivery(app_config, repository, client).run(
        task_ctx, SendDraftPayload(draft_id=draft_id, user_id="user-1")
    )

    assert client.names() == ["create_campaign", "set_content", "send_checklist", "send"]
    create_kwargs = client.calls[0][1]
    assert create_kwargs == {
        "list_id": "list-1",
        "subject_line": "Matching gift ends tonight",
        "from_name": "Jane Doe PAC",
        "reply_to": "jane@janedoe.org",
    }
    assert result.provider == EspProvider.MAILCHIMP
    assert result.provider_id == "camp-1"
    assert result.action == "sent"
    draft = repository.get_email_draft(draft_id)
    assert draft is not None
    assert draft.status == DraftStatus.SENT
    assert draft.sent_at == NOW
    assert draft.mailchimp_campaign_id == "camp-1"
    assert task_ctx.metadata["mailchimp_campaign_id"] == "camp-1"


def test_scheduled_campaign_keeps_schedule_time(
    app_config: AppConfig,
    row_store: RowStore,
    repository: PipelineRepository,
    task_ctx: Any,
) -> None:
    draft_id = _seed(row_store, repository)
    client = _FakeMailchimpClient()
    schedule_time = "2026-03-12T14:00:00+00:00"

    result = _delivery(app_config, repository, client).run(
        task_ctx,
        SendDraftPayload(draft_id=draft_id, user_id="user-1", schedule_time=schedule_time),
    )

    assert client.calls[-1] == ("schedule", ("camp-1", schedule_time))
    assert result.action == "scheduled"
    draft = repository.get_email_draft(draft_id)
    assert draft is not None
    assert draft.status == DraftStatus.SCHEDULED
    assert draft.scheduled_for == datetime(2026, 3, 12, 14, 0, tzinfo=UTC)


def test_failed_checklist_blocks_the_send(
    app_config: AppConfig,
    row_store: RowStore,
    repository: PipelineRepository,
    task_ctx: Any,
) -> None:
    draft_id = _seed(row_store, repository)
    checklist = SendChecklist(
        is_ready=False,
        items=(
            ChecklistItem("error", "Missing physical address", "Add a mailing address"),
            ChecklistItem("warning", "No plain-text version", "Consider adding one"),
            ChecklistItem("error", "Unverified domain", "Verify janedoe.org"),
        ),
    )
    client = _FakeMailchimpClient(checklist)

    with pytest.raises(SendChecklistError) as excinfo:
        _delivery(app_config, repository, client).run(
            task_ctx, SendDraftPayload(draft_id=draft_id, user_id="user-1")
        )

    message = str(excinfo.value)
    assert "Missing physical address" in message
    assert "Unverified domain" in message
    assert "No plain-text version" not in message
    assert "send" not in client.names()
    assert "schedule" not in client.names()
    draft = repository.get_email_draft(draft_id)
    assert draft is not None
    assert draft.status == DraftStatus.APPROVED
    assert draft.mailchimp_campaign_id == "camp-1"


def test_existing_campaign_is_reused(
    app_config: AppConfig,
    row_store: RowStore,
    repository: PipelineRepository,
    task_ctx: Any,
) -> None:
    draft_id = _seed(row_store, repository, campaign_id="camp-earlier")
    client = _FakeMailchimpClient()

    result = _delivery(app_config, repository, client).run(
        task_ctx, SendDraftPayload(draft_id=draft_id, user_id="user-1")
    )

    assert "create_campaign" not in client.names()
    assert client.calls[0] == ("get_campaign_status", "camp-earlier")
    assert client.calls[1] == ("set_content", ("camp-earlier", "<p>Double your impact</p>"))
    assert result.provider_id == "camp-earlier"


def test_already_sent_campaign_is_recorded_without_sending_again(
    app_config: AppConfig,
    row_store: RowStore,
    repository: PipelineRepository,
    task_ctx: Any,
) -> None:
    draft_id = _seed(row_store, repository, campaign_id="camp-earlier")
    client = _FakeMailchimpClient(campaign_status="sent")

    result = _delivery(app_config, repository, client).run(
        task_ctx, SendDraftPayload(draft_id=draft_id, user_id="user-1")
    )

    assert client.names() == ["get_campaign_status"]
    assert result.action == "sent"
    draft = repository.get_email_draft(draft_id)
    assert draft is not None
    assert draft.status == DraftStatus.SENT
    assert draft.mailchimp_campaign_id == "camp-earlier"


def test_incomplete_integration_is_permanent(
    app_config: AppConfig,
    row_store: RowStore,
    repository: PipelineRepository,
    task_ctx: Any,
) -> None:
    draft_id = _seed(row_store, repository, list_id=None)
    client = _FakeMailchimpClient()

    with pytest.raises(PermanentTaskError, match="list_id"):
        _delivery(app_config, repository, client).run(
            task_ctx, SendDraftPayload(draft_id=draft_id, user_id="user-1")
        )
    assert client.calls == []


def test_scheduled_draft_is_not_sendable(
    app_config: AppConfig,
    row_store: RowStore,
    repository: PipelineRepository,
    task_ctx: Any,
) -> None:
    draft_id = _seed(row_store, repository)
    repository.update_email_draft(draft_id, {"status": DraftStatus.SCHEDULED.value})
    client = _FakeMailchimpClient()

    with pytest.raises(PermanentTaskError, match='expected "approved"'):
        _delivery(app_config, repository, client).run(
            task_ctx, SendDraftPayload(draft_id=draft_id, user_id="user-1")
        )
    assert client.calls == []


def test_pending_review_draft_aborts_before_any_provider_call(
    app_config: AppConfig,
    row_store: RowStore,
    repository: PipelineRepository,
    task_ctx: Any,
) -> None:
    draft_id = _seed(row_store, repository)
    repository.update_email_draft(draft_id, {"status": DraftStatus.PENDING_REVIEW.value})
    client = _FakeMailchimpClient()

    with pytest.raises(PermanentTaskError, match="pending_review"):
        _delivery(app_config, repository, client).run(
            task_ctx, SendDraftPayload(draft_id=draft_id, user_id="user-1")
        )
    assert client.calls == []
    draft = repository.get_email_draft(draft_id)
    assert draft is not None
    assert draft.status == DraftStatus.PENDING_REVIEW
    assert draft.mailchimp_campaign_id is None


def test_parse_checklist_splits_errors_and_warnings() -> None:
    checklist = parse_checklist(
        {
            "is_ready": False,
            "items": [
                {"type": "error", "heading": "Missing subject", "details": "Add one"},
                {"type": "warning", "heading": "Long subject", "details": "Shorten it"},
                "garbage",
            ],
        }
    )

    assert checklist.is_ready is False
    assert [item.heading for item in checklist.errors] == ["Missing subject"]
    assert [item.heading for item in checklist.warnings] == ["Long subject"]
    assert checklist.errors[0].describe() == "Missing subject: Add one"


def test_parse_checklist_requires_ready_flag() -> None:
    with pytest.raises(ProviderResponseError):
        parse_checklist({"items": []})


def test_base_url_uses_server_prefix() -> None:
    assert mailchimp_base_url("us21") == "https://us21.api.mailchimp.com/3.0"
