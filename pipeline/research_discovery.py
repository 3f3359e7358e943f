"""Research discovery: brand-kit driven queries, scoring, dedup, and persistence."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from models import BrandKit, DiscoveryResult, SuggestedBy
from pipeline.observability import LogContext, StructuredLogger, get_logger
from pipeline.repository import PipelineRepository
from pipeline.scoring import score_discovery_result, source_domain
from pipeline.search_providers import SearchFailure, SearchProvider, SearchResult
from pipeline.vocabulary import ResearchVocabulary

if TYPE_CHECKING:
    from pipeline.context_retrieval import ContextIndexer
    from pipeline.task_runtime import TaskContext

MAX_QUERIES_PER_USER = 3
MAX_TOPICS_PER_USER = 8
MAX_STANCE_QUERIES = 3
SNIPPET_CHARS = 300


@dataclass(frozen=True)
class ScoredTopic:
    """Search hit with its domain and relevance score attached."""

    title: str
    summary: str
    source_url: str
    source_domain: str
    relevance_score: float
    published_at: datetime | None


def build_discovery_queries(kit: BrandKit, vocabulary: ResearchVocabulary) -> list[str]:
    """Up to three distinct queries covering identity, race, and stance angles."""
    name = _clean(kit.kit_name)
    office = _clean(kit.office_sought)
    state = _clean(kit.state)
    district = _clean(kit.district)
    level = _clean(kit.org_level)

    identity: list[str] = []
    if name:
        identity.append(name)
        if office:
            identity.append(f"{name} {office}")

    geography: list[str] = []
    if office and state:
        geography.append(f"{office} {state}")
    if district and state:
        geography.append(" ".join(part for part in (district, state, office) if part))
    if office and district:
        geography.append(f"{office} {district} fundraising")
    if level and state:
        geography.append(f"{level} {state} election")

    stances = [
        f"{term} {office}" if office else term
        for term in vocabulary.match_stances(kit.brand_summary)[:MAX_STANCE_QUERIES]
    ]

    queries: list[str] = []
    seen: set[str] = set()
    for round_index in range(max(len(identity), len(geography), len(stances), 0)):
        for group in (identity, geography, stances):
            if round_index >= len(group):
                continue
            query = group[round_index]
            key = query.lower()
            if key in seen:
                continue
            seen.add(key)
            queries.append(query)
            if len(queries) == MAX_QUERIES_PER_USER:
                return queries
    return queries


class ResearchDiscoveryEngine:
    """Turn a brand kit into at most eight new, non-duplicate research topics."""

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        provider: SearchProvider,
        vocabulary: ResearchVocabulary | None = None,
        indexer: ContextIndexer | None = None,
        restrict_domains: bool = False,
        logger: StructuredLogger | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._provider = provider
        self._vocabulary = vocabulary or ResearchVocabulary()
        self._indexer = indexer
        self._restrict_domains = restrict_domains
        self._logger = logger or get_logger()
        self._now = now or (lambda: datetime.now(UTC))

    def discover_for_user(self, kit: BrandKit) -> DiscoveryResult:
        context = LogContext(user_id=kit.user_id)
        queries = build_discovery_queries(kit, self._vocabulary)
        if not queries:
            self._logger.info("discovery_skipped", context=context, reason="no_query_attributes")
            return DiscoveryResult(user_id=kit.user_id, queries=(), saved=0, skipped=True)

        existing_urls = self._repository.list_recent_topic_urls(kit.user_id)
        domains = self._vocabulary.search_domains if self._restrict_domains else ()
        now = self._now()

        candidates: list[ScoredTopic] = []
        for query in queries:
            outcome = self._provider.search(query, domains=domains)
            if isinstance(outcome, SearchFailure):
                self._logger.warning(
                    "discovery_query_failed",
                    context=context,
                    provider=outcome.provider,
                    query=query,
                    reason=outcome.reason,
                    sample=outcome.sample,
                )
                continue
            candidates.extend(self._score(result, now) for result in outcome.results)

        fresh = _dedupe(candidates, existing_urls)
        fresh.sort(key=lambda topic: topic.relevance_score, reverse=True)
        selected = fresh[:MAX_TOPICS_PER_USER]

        saved = 0
        for topic in selected:
            try:
                inserted = self._repository.insert_research_topic(
                    user_id=kit.user_id,
                    title=topic.title,
                    summary=topic.summary,
                    source_url=topic.source_url,
                    source_domain=topic.source_domain or None,
                    content_snippet=topic.summary[:SNIPPET_CHARS],
                    relevance_score=topic.relevance_score,
                    suggested_by=SuggestedBy.AI,
                    published_at=topic.published_at,
                )
            except Exception as exc:  # noqa: BLE001
                self._logger.error(
                    "topic_insert_failed",
                    context=context,
                    source_url=topic.source_url,
                    error=str(exc),
                )
                continue
            saved += 1
            if self._indexer is not None:
                self._indexer.index_topic(inserted)

        self._logger.info(
            "discovery_user_completed",
            context=context,
            queries=queries,
            candidates=len(candidates),
            saved=saved,
        )
        return DiscoveryResult(user_id=kit.user_id, queries=tuple(queries), saved=saved)

    def run_all(self, ctx: TaskContext) -> dict[str, Any]:
        """Batch pass over every active brand kit; one user's failure never stops the rest."""
        ctx.set_status("fetching_users")
        kits = self._repository.list_brand_kits()
        ctx.set_metadata(total_users=len(kits))

        processed = 0
        failed = 0
        total_saved = 0
        ctx.set_status("discovering")
        for kit in kits:
            try:
                result = self.discover_for_user(kit)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                self._logger.error(
                    "discovery_user_failed",
                    context=ctx.log_context.bind(user_id=kit.user_id),
                    error=str(exc),
                )
                continue
            processed += 1
            total_saved += result.saved
            ctx.set_metadata(users_processed=processed, total_saved=total_saved)

        ctx.mark_status("completed")
        return {
            "users_processed": processed,
            "users_failed": failed,
            "total_saved": total_saved,
        }

    def _score(self, result: SearchResult, now: datetime) -> ScoredTopic:
        domain = source_domain(result.url)
        return ScoredTopic(
            title=result.title,
            summary=result.summary,
            source_url=result.url,
            source_domain=domain,
            relevance_score=score_discovery_result(
                domain=domain,
                published_at=result.published_at,
                has_description=bool(result.summary),
                has_image=bool(result.image_url),
                now=now,
                vocabulary=self._vocabulary,
            ),
            published_at=result.published_at,
        )


def _dedupe(candidates: list[ScoredTopic], existing_urls: set[str]) -> list[ScoredTopic]:
    seen = set(existing_urls)
    fresh: list[ScoredTopic] = []
    for topic in candidates:
        if topic.source_url in seen:
            continue
        seen.add(topic.source_url)
        fresh.append(topic)
    return fresh


def _clean(value: str | None) -> str:
    return (value or "").strip()
