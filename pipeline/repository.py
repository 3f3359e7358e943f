"""Typed accessors over the row store collections used by the pipeline."""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from models import (
    BrandKit,
    DraftStatus,
    DraftType,
    EmailDraft,
    EmbeddingMatch,
    EspProvider,
    Integration,
    Profile,
    ResearchTopic,
    Subscription,
    SuggestedBy,
)
from pipeline.row_store import RowStore

RECENT_URL_LOOKBACK = 200
RECENT_DRAFT_STATUSES = (DraftStatus.SENT, DraftStatus.APPROVED, DraftStatus.SCHEDULED)


class PipelineRepository:
    """Row-level reads and single-row writes scoped by user."""

    def __init__(self, store: RowStore) -> None:
        self._store = store

    # Brand kits

    def get_brand_kit(self, user_id: str) -> BrandKit | None:
        """Return the most recently updated active brand kit for a user."""
        rows = self._store.select(
            "brand_kits",
            filters={"user_id": user_id, "is_active": True},
            order_by="updated_at",
            descending=True,
            limit=1,
        )
        return _brand_kit_from_row(rows[0]) if rows else None

    def list_brand_kits(self) -> list[BrandKit]:
        """Return one active brand kit per user."""
        rows = self._store.select(
            "brand_kits",
            filters={"is_active": True},
            order_by="updated_at",
            descending=True,
        )
        seen: set[str] = set()
        kits: list[BrandKit] = []
        for row in rows:
            if row["user_id"] in seen:
                continue
            seen.add(row["user_id"])
            kits.append(_brand_kit_from_row(row))
        return kits

    # Research topics

    def list_recent_topic_urls(self, user_id: str, limit: int = RECENT_URL_LOOKBACK) -> set[str]:
        rows = self._store.select(
            "research_topics",
            filters={"user_id": user_id},
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        return {row["source_url"] for row in rows if row["source_url"]}

    def insert_research_topic(
        self,
        *,
        user_id: str,
        title: str,
        summary: str | None,
        source_url: str,
        source_domain: str | None,
        relevance_score: float,
        suggested_by: SuggestedBy,
        content_snippet: str | None = None,
        published_at: datetime | None = None,
    ) -> ResearchTopic:
        row = self._store.insert(
            "research_topics",
            {
                "user_id": user_id,
                "title": title,
                "summary": summary,
                "source_url": source_url,
                "source_domain": source_domain,
                "content_snippet": content_snippet,
                "relevance_score": relevance_score,
                "suggested_by": suggested_by.value,
                "used_in_draft": False,
                "published_at": published_at,
            },
        )
        return _topic_from_row(row)

    def list_unused_topics(self, user_id: str, limit: int = 5) -> list[ResearchTopic]:
        """Return the highest scoring topics not yet consumed by a draft."""
        rows = self._store.select(
            "research_topics",
            filters={"user_id": user_id, "used_in_draft": False},
            order_by="relevance_score",
            descending=True,
            limit=limit,
        )
        return [_topic_from_row(row) for row in rows]

    def get_research_topics(self, topic_ids: Sequence[str]) -> list[ResearchTopic]:
        if not topic_ids:
            return []
        rows = self._store.select("research_topics", filters={"id": list(topic_ids)})
        by_id = {row["id"]: _topic_from_row(row) for row in rows}
        return [by_id[topic_id] for topic_id in topic_ids if topic_id in by_id]

    def mark_topics_used(self, topic_ids: Iterable[str]) -> None:
        # One single-row update per topic; no multi-row writes.
        for topic_id in topic_ids:
            self._store.update("research_topics", topic_id, {"used_in_draft": True})

    # Email drafts

    def insert_email_draft(self, values: dict[str, Any]) -> EmailDraft:
        return _draft_from_row(self._store.insert("email_drafts", values))

    def get_email_draft(self, draft_id: str, *, user_id: str | None = None) -> EmailDraft | None:
        row = self._store.get("email_drafts", draft_id)
        if row is None:
            return None
        if user_id is not None and row["user_id"] != user_id:
            return None
        return _draft_from_row(row)

    def update_email_draft(self, draft_id: str, values: dict[str, Any]) -> EmailDraft:
        return _draft_from_row(self._store.update("email_drafts", draft_id, values))

    def get_email_drafts(self, draft_ids: Sequence[str]) -> list[EmailDraft]:
        if not draft_ids:
            return []
        rows = self._store.select("email_drafts", filters={"id": list(draft_ids)})
        by_id = {row["id"]: _draft_from_row(row) for row in rows}
        return [by_id[draft_id] for draft_id in draft_ids if draft_id in by_id]

    def list_recent_drafts(self, user_id: str, limit: int = 4) -> list[EmailDraft]:
        """Return the newest approved, scheduled or sent drafts for template rotation."""
        rows = self._store.select(
            "email_drafts",
            filters={
                "user_id": user_id,
                "status": [status.value for status in RECENT_DRAFT_STATUSES],
            },
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        return [_draft_from_row(row) for row in rows]

    def list_approved_unscheduled_drafts(self, user_id: str) -> list[EmailDraft]:
        rows = self._store.select(
            "email_drafts",
            filters={
                "user_id": user_id,
                "status": DraftStatus.APPROVED.value,
                "scheduled_for": None,
            },
            order_by="created_at",
        )
        return [_draft_from_row(row) for row in rows]

    # Integrations, subscriptions, profiles

    def get_integration(self, user_id: str, provider: EspProvider) -> Integration | None:
        rows = self._store.select(
            "email_integrations",
            filters={"user_id": user_id, "provider": provider.value, "is_active": True},
            limit=1,
        )
        return _integration_from_row(rows[0]) if rows else None

    def get_active_integration(self, user_id: str) -> Integration | None:
        """Return the user's active ESP integration, newest first."""
        rows = self._store.select(
            "email_integrations",
            filters={
                "user_id": user_id,
                "provider": [provider.value for provider in EspProvider],
                "is_active": True,
            },
            order_by="updated_at",
            descending=True,
            limit=1,
        )
        return _integration_from_row(rows[0]) if rows else None

    def list_active_subscriptions(self) -> list[Subscription]:
        rows = self._store.select(
            "subscriptions",
            filters={"status": "active"},
            order_by="created_at",
        )
        return [_subscription_from_row(row) for row in rows]

    def get_active_subscription(self, user_id: str) -> Subscription | None:
        rows = self._store.select(
            "subscriptions",
            filters={"user_id": user_id, "status": "active"},
            limit=1,
        )
        return _subscription_from_row(rows[0]) if rows else None

    def get_profile(self, user_id: str) -> Profile | None:
        row = self._store.get("profiles", user_id)
        return _profile_from_row(row) if row else None

    # Embeddings

    def upsert_embedding(
        self,
        *,
        user_id: str,
        source_type: str,
        source_id: str,
        embedding: Sequence[float],
    ) -> None:
        rows = self._store.select(
            "content_embeddings",
            filters={"source_type": source_type, "source_id": source_id},
            limit=1,
        )
        if rows:
            self._store.update("content_embeddings", rows[0]["id"], {"embedding": list(embedding)})
            return
        self._store.insert(
            "content_embeddings",
            {
                "user_id": user_id,
                "source_type": source_type,
                "source_id": source_id,
                "embedding": list(embedding),
            },
        )

    def search_embeddings(
        self,
        *,
        user_id: str,
        source_type: str,
        query_embedding: Sequence[float],
        match_count: int,
        threshold: float,
    ) -> list[EmbeddingMatch]:
        """Cosine nearest neighbours above ``threshold``, best first."""
        rows = self._store.select(
            "content_embeddings",
            filters={"user_id": user_id, "source_type": source_type},
        )
        matches: list[EmbeddingMatch] = []
        for row in rows:
            similarity = cosine_similarity(query_embedding, row["embedding"] or [])
            if similarity >= threshold:
                matches.append(
                    EmbeddingMatch(
                        source_type=source_type,
                        source_id=row["source_id"],
                        similarity=similarity,
                    )
                )
        matches.sort(key=lambda match: match.similarity, reverse=True)
        return matches[:match_count]


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    if not left or not right or len(left) != len(right):
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    if norm == 0:
        return 0.0
    return dot / norm


def _brand_kit_from_row(row: dict[str, Any]) -> BrandKit:
    return BrandKit(
        id=row["id"],
        user_id=row["user_id"],
        kit_name=row["kit_name"],
        org_type=row["org_type"],
        org_level=row["org_level"],
        office_sought=row["office_sought"],
        state=row["state"],
        district=row["district"],
        brand_summary=row["brand_summary"],
        tone=row["tone"],
        disclaimers=row["disclaimers"],
        address=row["address"],
        footer=row["footer"],
        colors=row["colors"] or {},
        is_active=bool(row["is_active"]),
    )


def _topic_from_row(row: dict[str, Any]) -> ResearchTopic:
    return ResearchTopic(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        summary=row["summary"],
        source_url=row["source_url"],
        source_domain=row["source_domain"],
        relevance_score=float(row["relevance_score"] or 0.0),
        suggested_by=SuggestedBy(row["suggested_by"]),
        used_in_draft=bool(row["used_in_draft"]),
        content_snippet=row["content_snippet"],
        published_at=_parse_optional_iso(row["published_at"]),
        created_at=_parse_optional_iso(row["created_at"]),
    )


def _draft_from_row(row: dict[str, Any]) -> EmailDraft:
    blocks = row["editor_blocks"]
    return EmailDraft(
        id=row["id"],
        user_id=row["user_id"],
        status=DraftStatus(row["status"]),
        draft_type=DraftType(row["draft_type"] or DraftType.WEEKLY),
        subject_line=row["subject_line"],
        alt_subject_lines=tuple(row["alt_subject_lines"] or ()),
        preview_text=row["preview_text"],
        body_html=row["body_html"],
        body_text=row["body_text"],
        editor_blocks=tuple(blocks) if blocks is not None else None,
        template_used=row["template_used"],
        ai_model=row["ai_model"],
        research_topic_ids=tuple(row["research_topic_ids"] or ()),
        brand_kit_id=row["brand_kit_id"],
        week_of=row["week_of"],
        scheduled_for=_parse_optional_iso(row["scheduled_for"]),
        sent_at=_parse_optional_iso(row["sent_at"]),
        reply_to=row["reply_to"],
        action_network_message_id=row["action_network_message_id"],
        mailchimp_campaign_id=row["mailchimp_campaign_id"],
        created_at=_parse_optional_iso(row["created_at"]),
    )


def _integration_from_row(row: dict[str, Any]) -> Integration:
    return Integration(
        id=row["id"],
        user_id=row["user_id"],
        provider=EspProvider(row["provider"]),
        access_token=row["access_token"] or "",
        server_prefix=row["server_prefix"],
        list_id=row["list_id"],
        metadata=row["metadata"] or {},
        is_active=bool(row["is_active"]),
    )


def _subscription_from_row(row: dict[str, Any]) -> Subscription:
    return Subscription(
        id=row["id"],
        user_id=row["user_id"],
        tier=row["tier"] or "",
        emails_per_week=int(row["emails_per_week"] or 0),
        rapid_response=bool(row["rapid_response"]),
        status=row["status"] or "inactive",
    )


def _profile_from_row(row: dict[str, Any]) -> Profile:
    days = row["delivery_days"]
    return Profile(
        id=row["id"],
        email=row["email"],
        organization_name=row["organization_name"],
        delivery_days=tuple(days) if days is not None else None,
        timezone=row["timezone"],
    )


def _parse_optional_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
