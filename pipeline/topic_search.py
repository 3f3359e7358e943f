"""On-demand research search: one query, one provider call, top five saved."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from models import TopicSearchPayload
from pipeline.failures import PermanentTaskError
from pipeline.observability import StructuredLogger, get_logger
from pipeline.repository import PipelineRepository
from pipeline.scoring import score_search_result, source_domain
from pipeline.search_providers import MISSING_API_KEY, SearchFailure, SearchProvider
from pipeline.vocabulary import ResearchVocabulary

if TYPE_CHECKING:
    from pipeline.context_retrieval import ContextIndexer
    from pipeline.task_runtime import TaskContext

MAX_SAVED_RESULTS = 5
SNIPPET_CHARS = 300


class TopicSearchService:
    """Score a single search against the query terms and persist the best hits."""

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        provider: SearchProvider,
        vocabulary: ResearchVocabulary | None = None,
        indexer: ContextIndexer | None = None,
        logger: StructuredLogger | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._provider = provider
        self._vocabulary = vocabulary or ResearchVocabulary()
        self._indexer = indexer
        self._logger = logger or get_logger()
        self._now = now or (lambda: datetime.now(UTC))

    def run(self, ctx: TaskContext, payload: TopicSearchPayload) -> dict[str, Any]:
        context = ctx.log_context.bind(user_id=payload.user_id)
        ctx.set_metadata(query=payload.query)
        ctx.set_status("searching")

        outcome = self._provider.search(payload.query, domains=self._vocabulary.search_domains)
        if isinstance(outcome, SearchFailure):
            if outcome.reason == MISSING_API_KEY:
                raise PermanentTaskError(f"{outcome.provider} API key is not configured")
            self._logger.warning(
                "topic_search_failed",
                context=context,
                provider=outcome.provider,
                reason=outcome.reason,
                sample=outcome.sample,
            )
            return {"query": payload.query, "found": 0, "saved": 0, "topic_ids": []}

        ctx.set_metadata(results_found=len(outcome.results))
        ctx.set_status("scoring")
        now = self._now()
        existing_urls = self._repository.list_recent_topic_urls(payload.user_id)

        scored = []
        seen = set(existing_urls)
        for result in outcome.results:
            if result.url in seen:
                continue
            seen.add(result.url)
            domain = source_domain(result.url)
            score = score_search_result(
                query=payload.query,
                title=result.title,
                snippet=result.summary,
                domain=domain,
                published_at=result.published_at,
                now=now,
                vocabulary=self._vocabulary,
            )
            scored.append((score, domain, result))
        scored.sort(key=lambda item: item[0], reverse=True)

        saved_ids: list[str] = []
        for score, domain, result in scored[:MAX_SAVED_RESULTS]:
            try:
                topic = self._repository.insert_research_topic(
                    user_id=payload.user_id,
                    title=result.title,
                    summary=result.summary,
                    source_url=result.url,
                    source_domain=domain or None,
                    content_snippet=result.summary[:SNIPPET_CHARS],
                    relevance_score=score,
                    suggested_by=payload.suggested_by,
                    published_at=result.published_at,
                )
            except Exception as exc:  # noqa: BLE001
                self._logger.error(
                    "topic_insert_failed",
                    context=context,
                    source_url=result.url,
                    error=str(exc),
                )
                continue
            saved_ids.append(topic.id)
            if self._indexer is not None:
                self._indexer.index_topic(topic)

        ctx.set_metadata(saved_count=len(saved_ids))
        ctx.mark_status("completed")
        self._logger.info(
            "topic_search_completed",
            context=context,
            query=payload.query,
            found=len(outcome.results),
            saved=len(saved_ids),
        )
        return {
            "query": payload.query,
            "found": len(outcome.results),
            "saved": len(saved_ids),
            "topic_ids": saved_ids,
        }
