"""Weekly and rapid-response draft generation for one user."""

from __future__ import annotations

import random
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from models import (
    BrandKit,
    DraftStatus,
    DraftType,
    EmailDraft,
    GenerateDraftsPayload,
    GenerationResult,
    RapidDraftPayload,
    ResearchTopic,
)
from pipeline.context_retrieval import ContextIndexer, ContextRetriever, RetrievedContext
from pipeline.failures import DraftParseError, PermanentTaskError, RapidResponseDisabledError
from pipeline.observability import StructuredLogger, get_logger
from pipeline.repository import PipelineRepository
from pipeline.writer import RAPID_TEMPLATES, ComposedDraft, DraftWriter, select_templates

if TYPE_CHECKING:
    from pipeline.task_runtime import TaskContext

TOPIC_POOL_SIZE = 5
TOPICS_PER_DRAFT = 2


def current_week_of(now: datetime | None = None) -> str:
    """ISO date of the Monday of the current UTC week."""
    moment = (now or datetime.now(UTC)).astimezone(UTC)
    monday = moment.date() - timedelta(days=moment.weekday())
    return monday.isoformat()


def topics_for_draft(topics: list[ResearchTopic], index: int) -> list[ResearchTopic]:
    """Non-overlapping window of the relevance-ordered pool for draft ``index``."""
    start = index * TOPICS_PER_DRAFT
    return topics[start : start + TOPICS_PER_DRAFT]


class DraftGenerationEngine:
    """Turn a brand kit, its unused research, and retrieved context into drafts."""

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        writer: DraftWriter,
        retriever: ContextRetriever | None = None,
        indexer: ContextIndexer | None = None,
        logger: StructuredLogger | None = None,
        rng: random.Random | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._writer = writer
        self._retriever = retriever
        self._indexer = indexer
        self._logger = logger or get_logger()
        self._rng = rng or random.Random()
        self._now = now or (lambda: datetime.now(UTC))

    def generate_user_drafts(
        self, ctx: TaskContext, payload: GenerateDraftsPayload
    ) -> GenerationResult:
        context = ctx.log_context.bind(user_id=payload.user_id)
        ctx.set_metadata(
            user_id=payload.user_id,
            tier=payload.tier,
            emails_to_generate=payload.emails_to_generate,
            drafts_completed=0,
        )
        ctx.set_status("loading_context")

        kit = self._repository.get_brand_kit(payload.user_id)
        if kit is None:
            raise PermanentTaskError(f"Brand kit not found for user {payload.user_id}")

        topics = self._repository.list_unused_topics(payload.user_id, limit=TOPIC_POOL_SIZE)
        recent = self._repository.list_recent_drafts(payload.user_id)
        most_recent = next((draft.template_used for draft in recent if draft.template_used), None)
        templates = select_templates(
            payload.emails_to_generate, most_recent=most_recent, rng=self._rng
        )
        retrieved = self._retrieve(
            payload.user_id,
            " ".join(
                part
                for part in (kit.kit_name, kit.brand_summary, *(topic.title for topic in topics))
                if part
            ),
        )

        ctx.set_status("generating_drafts")
        draft_ids: list[str] = []
        topics_used: list[str] = []
        for index, template in enumerate(templates):
            draft_topics = topics_for_draft(topics, index)
            self._logger.info(
                "draft_generation_started",
                context=context,
                draft_number=index + 1,
                total=payload.emails_to_generate,
                template=template,
                topic_ids=[topic.id for topic in draft_topics],
            )
            try:
                composed = self._writer.write_weekly(
                    kit=kit,
                    template=template,
                    topics=draft_topics,
                    week_of=payload.week_of,
                    context=retrieved,
                )
                draft = self._save_draft(
                    kit=kit,
                    composed=composed,
                    week_of=payload.week_of,
                    draft_type=DraftType.WEEKLY,
                    topic_ids=[topic.id for topic in draft_topics],
                )
            except Exception as exc:  # noqa: BLE001
                self._logger.error(
                    "draft_generation_failed",
                    context=context,
                    draft_number=index + 1,
                    template=template,
                    error=str(exc),
                    sample=exc.sample if isinstance(exc, DraftParseError) else None,
                )
                continue

            if draft_topics:
                self._repository.mark_topics_used(topic.id for topic in draft_topics)
                topics_used.extend(topic.id for topic in draft_topics)
            draft_ids.append(draft.id)
            ctx.increment("drafts_completed")
            if self._indexer is not None:
                self._indexer.index_draft(draft)
            self._logger.info(
                "draft_saved",
                context=context.bind(draft_id=draft.id),
                subject=composed.subject_line,
                template=template,
            )

        ctx.mark_status("completed")
        self._logger.info(
            "draft_generation_completed",
            context=context,
            requested=payload.emails_to_generate,
            saved=len(draft_ids),
        )
        return GenerationResult(
            user_id=payload.user_id,
            drafts_requested=payload.emails_to_generate,
            drafts_created=len(draft_ids),
            draft_ids=tuple(draft_ids),
            topics_used=tuple(topics_used),
        )

    def generate_rapid_draft(self, ctx: TaskContext, payload: RapidDraftPayload) -> dict[str, Any]:
        """Single urgent draft, gated on the user's rapid-response entitlement."""
        context = ctx.log_context.bind(user_id=payload.user_id)
        ctx.set_metadata(user_id=payload.user_id, urgency=payload.urgency.value)
        ctx.set_status("loading_context")

        if payload.template not in RAPID_TEMPLATES:
            raise PermanentTaskError(f"Unknown rapid response template: {payload.template}")

        subscription = self._repository.get_active_subscription(payload.user_id)
        if subscription is None or not subscription.rapid_response:
            raise RapidResponseDisabledError(
                f"Rapid response not enabled for user {payload.user_id}"
            )

        kit = self._repository.get_brand_kit(payload.user_id)
        if kit is None:
            raise PermanentTaskError(f"Brand kit not found for user {payload.user_id}")

        retrieved = self._retrieve(
            payload.user_id,
            f"{payload.topic} {kit.kit_name or ''} {kit.brand_summary or ''} urgent rapid response",
        )

        ctx.set_status("generating_draft")
        composed = self._writer.write_rapid(kit=kit, payload=payload, context=retrieved)
        draft = self._save_draft(
            kit=kit,
            composed=composed,
            week_of=current_week_of(self._now()),
            draft_type=DraftType.RAPID_RESPONSE,
            topic_ids=[],
        )
        if self._indexer is not None:
            self._indexer.index_draft(draft)

        ctx.mark_status("completed")
        self._logger.info(
            "rapid_draft_saved",
            context=context.bind(draft_id=draft.id),
            subject=composed.subject_line,
            urgency=payload.urgency.value,
            template=payload.template,
        )
        return {
            "draft_id": draft.id,
            "subject": composed.subject_line,
            "urgency": payload.urgency.value,
            "template": payload.template,
        }

    def _retrieve(self, user_id: str, query_text: str) -> RetrievedContext:
        if self._retriever is None:
            return RetrievedContext()
        return self._retriever.fetch(user_id, query_text)

    def _save_draft(
        self,
        *,
        kit: BrandKit,
        composed: ComposedDraft,
        week_of: str,
        draft_type: DraftType,
        topic_ids: list[str],
    ) -> EmailDraft:
        return self._repository.insert_email_draft(
            {
                "user_id": kit.user_id,
                "brand_kit_id": kit.id,
                "week_of": week_of,
                "draft_type": draft_type.value,
                "subject_line": composed.subject_line,
                "alt_subject_lines": list(composed.alt_subject_lines),
                "preview_text": composed.preview_text,
                "body_html": composed.body_html,
                "body_text": composed.body_text,
                "editor_blocks": [block.to_dict() for block in composed.editor_blocks] or None,
                "template_used": composed.template_used,
                "ai_model": composed.ai_model,
                "research_topic_ids": topic_ids,
                "status": DraftStatus.PENDING_REVIEW.value,
            }
        )
