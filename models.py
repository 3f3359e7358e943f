"""Core typed models used across the fundraising email pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class DraftStatus(StrEnum):
    """Email draft lifecycle status."""

    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REVISION_REQUESTED = "revision_requested"
    SCHEDULED = "scheduled"
    SENT = "sent"


class DraftType(StrEnum):
    """Origin of an email draft."""

    WEEKLY = "weekly"
    RAPID_RESPONSE = "rapid_response"


class SuggestedBy(StrEnum):
    """Who surfaced a research topic."""

    USER = "user"
    AI = "ai"


class EspProvider(StrEnum):
    """Supported email service providers."""

    MAILCHIMP = "mailchimp"
    ACTION_NETWORK = "action_network"


class RapidUrgency(StrEnum):
    """Urgency level requested for a rapid-response draft."""

    CRITICAL = "critical"
    HIGH = "high"
    ELEVATED = "elevated"


class TaskName(StrEnum):
    """Registered task identifiers."""

    DISCOVER_RESEARCH = "discover-research"
    RESEARCH_TOPICS = "research-topics"
    GENERATE_USER_DRAFTS = "generate-user-drafts"
    GENERATE_RAPID_DRAFT = "generate-rapid-draft"
    SCHEDULE_EMAIL_DELIVERIES = "schedule-email-deliveries"
    SEND_TO_ACTION_NETWORK = "send-to-action-network"
    SEND_TO_MAILCHIMP = "send-to-mailchimp"
    WEEKLY_DRAFT_DROP = "weekly-draft-drop"


class TaskStatus(StrEnum):
    """Persistent task run ledger states."""

    QUEUED = "queued"
    RUNNING = "running"
    WAITING = "waiting"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class BrandKit:
    """Campaign identity and voice profile owned by one user."""

    id: str
    user_id: str
    kit_name: str | None = None
    org_type: str | None = None
    org_level: str | None = None
    office_sought: str | None = None
    state: str | None = None
    district: str | None = None
    brand_summary: str | None = None
    tone: str | None = None
    disclaimers: str | None = None
    address: str | None = None
    footer: str | None = None
    colors: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True


@dataclass(frozen=True)
class ResearchTopic:
    """Scored news item that can feed a draft."""

    id: str
    user_id: str
    title: str
    summary: str | None
    source_url: str
    source_domain: str | None
    relevance_score: float
    suggested_by: SuggestedBy
    used_in_draft: bool = False
    content_snippet: str | None = None
    published_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class EditorBlock:
    """Structured content block consumed by the drag-and-drop editor."""

    id: str
    category: str
    module_id: str
    html: str
    props: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "module",
            "category": self.category,
            "moduleId": self.module_id,
            "html": self.html,
            "props": dict(self.props),
        }


@dataclass(frozen=True)
class EmailDraft:
    """Persisted email draft row."""

    id: str
    user_id: str
    status: DraftStatus
    draft_type: DraftType
    subject_line: str | None = None
    alt_subject_lines: tuple[str, ...] = ()
    preview_text: str | None = None
    body_html: str | None = None
    body_text: str | None = None
    editor_blocks: tuple[dict[str, Any], ...] | None = None
    template_used: str | None = None
    ai_model: str | None = None
    research_topic_ids: tuple[str, ...] = ()
    brand_kit_id: str | None = None
    week_of: str | None = None
    scheduled_for: datetime | None = None
    sent_at: datetime | None = None
    reply_to: str | None = None
    action_network_message_id: str | None = None
    mailchimp_campaign_id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class Integration:
    """ESP credential record for one (user, provider) pair."""

    id: str
    user_id: str
    provider: EspProvider
    access_token: str
    server_prefix: str | None = None
    list_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True


@dataclass(frozen=True)
class Subscription:
    """Per-user plan governing fan-out volume."""

    id: str
    user_id: str
    tier: str
    emails_per_week: int
    rapid_response: bool
    status: str


@dataclass(frozen=True)
class Profile:
    """Account-level settings used by delivery scheduling and ESP sends."""

    id: str
    email: str | None = None
    organization_name: str | None = None
    delivery_days: tuple[str, ...] | None = None
    timezone: str | None = None


@dataclass(frozen=True)
class EmbeddingMatch:
    """Nearest-neighbour match from stored content embeddings."""

    source_type: str
    source_id: str
    similarity: float


@dataclass(frozen=True)
class TaskRunRecord:
    """Persistent task run row from the SQLite ledger."""

    run_id: str
    task_name: str
    status: TaskStatus
    attempt: int
    payload: dict[str, Any]
    checkpoint: dict[str, Any]
    metadata: dict[str, Any]
    result: dict[str, Any] | None
    last_error: str | None
    resume_at: datetime | None
    parent_run_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class GenerateDraftsPayload:
    """Trigger payload for weekly draft generation."""

    user_id: str
    tier: str
    emails_to_generate: int
    week_of: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> GenerateDraftsPayload:
        return cls(
            user_id=str(raw["user_id"]),
            tier=str(raw.get("tier", "")),
            emails_to_generate=int(raw["emails_to_generate"]),
            week_of=str(raw["week_of"]),
        )


@dataclass(frozen=True)
class RapidDraftPayload:
    """Trigger payload for a rapid-response draft."""

    user_id: str
    topic: str
    urgency: RapidUrgency
    template: str
    source_urls: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RapidDraftPayload:
        return cls(
            user_id=str(raw["user_id"]),
            topic=str(raw["topic"]),
            urgency=RapidUrgency(raw.get("urgency", RapidUrgency.HIGH)),
            template=str(raw.get("template", "breaking-news-response")),
            source_urls=tuple(str(url) for url in raw.get("source_urls") or ()),
        )


@dataclass(frozen=True)
class SendDraftPayload:
    """Trigger payload shared by both ESP send pipelines."""

    draft_id: str
    user_id: str
    schedule_time: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SendDraftPayload:
        schedule_time = raw.get("schedule_time")
        return cls(
            draft_id=str(raw["draft_id"]),
            user_id=str(raw["user_id"]),
            schedule_time=str(schedule_time) if schedule_time else None,
        )


@dataclass(frozen=True)
class TopicSearchPayload:
    """Trigger payload for an on-demand research search."""

    user_id: str
    query: str
    suggested_by: SuggestedBy = SuggestedBy.USER

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TopicSearchPayload:
        return cls(
            user_id=str(raw["user_id"]),
            query=str(raw["query"]),
            suggested_by=SuggestedBy(raw.get("suggested_by", SuggestedBy.USER)),
        )


@dataclass(frozen=True)
class GenerationResult:
    """Summary of one draft generation run."""

    user_id: str
    drafts_requested: int
    drafts_created: int
    draft_ids: tuple[str, ...]
    topics_used: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "drafts_requested": self.drafts_requested,
            "drafts_created": self.drafts_created,
            "draft_ids": list(self.draft_ids),
            "topics_used": list(self.topics_used),
        }


@dataclass(frozen=True)
class DiscoveryResult:
    """Summary of one per-user discovery pass."""

    user_id: str
    queries: tuple[str, ...]
    saved: int
    skipped: bool = False


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of an ESP send pipeline run."""

    draft_id: str
    provider: EspProvider
    provider_id: str
    action: str
    scheduled_for: str | None = None
    state_desync: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "draft_id": self.draft_id,
            "provider": self.provider.value,
            "provider_id": self.provider_id,
            "action": self.action,
            "scheduled_for": self.scheduled_for,
            "state_desync": self.state_desync,
        }


@dataclass(frozen=True)
class FanOutResult:
    """Aggregate counters for the weekly fan-out."""

    week_of: str
    total: int
    succeeded: int
    failed: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "week_of": self.week_of,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }
