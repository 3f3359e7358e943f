"""Tests for on-demand research search."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from models import SuggestedBy, TopicSearchPayload
from pipeline.failures import PermanentTaskError
from pipeline.repository import PipelineRepository
from pipeline.search_providers import (
    MISSING_API_KEY,
    PerplexitySearchProvider,
    SearchFailure,
    SearchOutcome,
    SearchResult,
    SearchSuccess,
)
from pipeline.topic_search import MAX_SAVED_RESULTS, TopicSearchService

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class _FakeProvider:
    name = "perplexity_search"

    def __init__(self, outcome: SearchOutcome) -> None:
        self.outcome = outcome
        self.calls: list[tuple[str, tuple[str, ...]]] = []

    def search(self, query: str, *, domains: Sequence[str] = ()) -> SearchOutcome:
        self.calls.append((query, tuple(domains)))
        return self.outcome


def _service(repository: PipelineRepository, provider: _FakeProvider) -> TopicSearchService:
    return TopicSearchService(repository=repository, provider=provider, now=lambda: NOW)


def test_saves_top_five_by_score(repository: PipelineRepository, task_ctx: Any) -> None:
    results = [
        SearchResult(
            title=f"Other story {index}",
            summary="unrelated",
            url=f"https://localpaper.com/{index}",
        )
        for index in range(6)
    ]
    results.append(
        SearchResult(
            title="Medicaid expansion vote",
            summary="Medicaid expansion vote set for Tuesday",
            url="https://apnews.com/medicaid",
            published_at=NOW - timedelta(hours=5),
        )
    )
    provider = _FakeProvider(
        SearchSuccess("perplexity_search", "medicaid expansion", tuple(results))
    )

    summary = _service(repository, provider).run(
        task_ctx,
        TopicSearchPayload(user_id="user-1", query="medicaid expansion"),
    )

    assert summary["found"] == 7
    assert summary["saved"] == MAX_SAVED_RESULTS
    topics = repository.list_unused_topics("user-1", limit=10)
    assert topics[0].source_url == "https://apnews.com/medicaid"
    assert topics[0].relevance_score == 10.0
    assert all(topic.suggested_by == SuggestedBy.USER for topic in topics)
    assert task_ctx.metadata["saved_count"] == MAX_SAVED_RESULTS


def test_search_is_restricted_to_listed_outlets(
    repository: PipelineRepository, task_ctx: Any
) -> None:
    provider = _FakeProvider(SearchSuccess("perplexity_search", "q", ()))

    _service(repository, provider).run(task_ctx, TopicSearchPayload(user_id="u", query="q"))

    _, domains = provider.calls[0]
    assert "nytimes.com" in domains
    assert "politico.com" in domains


def test_missing_api_key_is_permanent(repository: PipelineRepository, task_ctx: Any) -> None:
    provider = _FakeProvider(SearchFailure("perplexity_search", "q", MISSING_API_KEY))

    with pytest.raises(PermanentTaskError):
        _service(repository, provider).run(task_ctx, TopicSearchPayload(user_id="u", query="q"))


def test_provider_failure_saves_nothing(repository: PipelineRepository, task_ctx: Any) -> None:
    provider = _FakeProvider(SearchFailure("perplexity_search", "q", "request_failed: 500"))

    summary = _service(repository, provider).run(
        task_ctx, TopicSearchPayload(user_id="u", query="q")
    )

    assert summary == {"query": "q", "found": 0, "saved": 0, "topic_ids": []}
    assert repository.list_unused_topics("u") == []


def test_perplexity_provider_without_key_makes_no_request() -> None:
    provider = PerplexitySearchProvider(api_key=None, max_attempts=1)

    outcome = provider.search("anything")

    assert isinstance(outcome, SearchFailure)
    assert outcome.reason == MISSING_API_KEY
