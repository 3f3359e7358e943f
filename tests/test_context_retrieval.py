"""Tests for similar-content retrieval and embedding indexing."""

from __future__ import annotations

from models import DraftStatus, SuggestedBy
from pipeline.context_retrieval import (
    EMAIL_SOURCE,
    ContextIndexer,
    ContextRetriever,
    RetrievedContext,
    format_context_section,
)
from pipeline.repository import PipelineRepository


class _KeywordEmbedder:
    """Two-dimensional embedding: (mentions healthcare, mentions anything else)."""

    def __init__(self) -> None:
        self.calls = 0

    def embed(self, text: str) -> list[float]:
        self.calls += 1
        return [1.0, 0.0] if "healthcare" in text.lower() else [0.0, 1.0]


class _BrokenEmbedder:
    def embed(self, text: str) -> list[float]:
        raise RuntimeError("embedding service unavailable")


def test_indexed_drafts_and_topics_are_retrieved(repository: PipelineRepository) -> None:
    embedder = _KeywordEmbedder()
    indexer = ContextIndexer(repository=repository, embedder=embedder)
    match = repository.insert_email_draft(
        {
            "user_id": "u1",
            "status": DraftStatus.SENT.value,
            "draft_type": "weekly",
            "subject_line": "Protect healthcare",
            "body_text": "Healthcare is on the ballot.",
            "body_html": "<p>Healthcare is on the ballot.</p>",
        }
    )
    other = repository.insert_email_draft(
        {
            "user_id": "u1",
            "status": DraftStatus.SENT.value,
            "draft_type": "weekly",
            "subject_line": "Roads and bridges",
            "body_text": "Infrastructure week.",
        }
    )
    topic = repository.insert_research_topic(
        user_id="u1",
        title="Healthcare bill advances",
        summary="Committee vote",
        source_url="https://npr.org/hc",
        source_domain="npr.org",
        relevance_score=7.0,
        suggested_by=SuggestedBy.AI,
    )
    assert indexer.index_draft(match) is True
    assert indexer.index_draft(other) is True
    assert indexer.index_topic(topic) is True

    context = ContextRetriever(repository=repository, embedder=embedder).fetch(
        "u1", "healthcare funding"
    )

    assert [email.subject for email in context.similar_emails] == ["Protect healthcare"]
    assert [fmt.subject for fmt in context.html_formats] == ["Protect healthcare"]
    assert [item.title for item in context.similar_research] == ["Healthcare bill advances"]
    section = format_context_section(context)
    assert "PAST SUCCESSFUL EMAILS" in section
    assert "RELATED RESEARCH" in section


def test_retrieval_failure_degrades_to_empty_context(repository: PipelineRepository) -> None:
    context = ContextRetriever(repository=repository, embedder=_BrokenEmbedder()).fetch(
        "u1", "anything"
    )

    assert context == RetrievedContext()
    assert context.is_empty
    assert format_context_section(context) == ""


def test_index_failure_is_reported_not_raised(repository: PipelineRepository) -> None:
    draft = repository.insert_email_draft(
        {"user_id": "u1", "status": "pending_review", "draft_type": "weekly", "body_text": "x"}
    )

    indexed = ContextIndexer(repository=repository, embedder=_BrokenEmbedder()).index_draft(draft)

    assert indexed is False
    assert (
        repository.search_embeddings(
            user_id="u1",
            source_type=EMAIL_SOURCE,
            query_embedding=[1.0, 0.0],
            match_count=5,
            threshold=0.0,
        )
        == []
    )


def test_reindexing_replaces_the_stored_vector(repository: PipelineRepository) -> None:
    embedder = _KeywordEmbedder()
    indexer = ContextIndexer(repository=repository, embedder=embedder)
    draft = repository.insert_email_draft(
        {"user_id": "u1", "status": "sent", "draft_type": "weekly", "body_text": "healthcare"}
    )

    indexer.index_draft(draft)
    indexer.index_draft(draft)

    matches = repository.search_embeddings(
        user_id="u1",
        source_type=EMAIL_SOURCE,
        query_embedding=[1.0, 0.0],
        match_count=5,
        threshold=0.0,
    )
    assert len(matches) == 1
