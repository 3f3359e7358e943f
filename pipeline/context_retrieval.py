"""Similar-content retrieval for draft prompts, and best-effort embedding indexing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from models import EmailDraft, ResearchTopic
from pipeline.observability import LogContext, StructuredLogger, get_logger
from pipeline.repository import PipelineRepository

EMAIL_SOURCE = "email_draft"
RESEARCH_SOURCE = "research_topic"

EMAIL_MATCH_COUNT = 10
RESEARCH_MATCH_COUNT = 3
MATCH_THRESHOLD = 0.5
TOP_EMAILS = 5
TOP_FORMATS = 5
BODY_PREVIEW_CHARS = 300
HTML_SNIPPET_CHARS = 500
RESEARCH_SUMMARY_CHARS = 200


class Embedder(Protocol):
    def embed(self, text: str) -> list[float]: ...


@dataclass(frozen=True)
class SimilarEmail:
    subject: str
    body_preview: str
    status: str
    similarity: float


@dataclass(frozen=True)
class HtmlFormat:
    subject: str
    html_snippet: str
    similarity: float


@dataclass(frozen=True)
class SimilarResearch:
    title: str
    summary: str
    similarity: float


@dataclass(frozen=True)
class RetrievedContext:
    similar_emails: tuple[SimilarEmail, ...] = field(default_factory=tuple)
    html_formats: tuple[HtmlFormat, ...] = field(default_factory=tuple)
    similar_research: tuple[SimilarResearch, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not (self.similar_emails or self.html_formats or self.similar_research)


class ContextRetriever:
    """Fetch prior drafts and research close to a query embedding.

    Any failure (embedding call, store read) degrades to an empty context.
    """

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        embedder: Embedder,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._repository = repository
        self._embedder = embedder
        self._logger = logger or get_logger()

    def fetch(self, user_id: str, query_text: str) -> RetrievedContext:
        try:
            return self._fetch(user_id, query_text)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "context_retrieval_failed",
                context=LogContext(user_id=user_id),
                error=str(exc),
            )
            return RetrievedContext()

    def _fetch(self, user_id: str, query_text: str) -> RetrievedContext:
        embedding = self._embedder.embed(query_text)

        email_matches = self._repository.search_embeddings(
            user_id=user_id,
            source_type=EMAIL_SOURCE,
            query_embedding=embedding,
            match_count=EMAIL_MATCH_COUNT,
            threshold=MATCH_THRESHOLD,
        )
        similarity = {match.source_id: match.similarity for match in email_matches}
        drafts = sorted(
            self._repository.get_email_drafts(list(similarity)),
            key=lambda draft: similarity.get(draft.id, 0.0),
            reverse=True,
        )
        similar_emails = tuple(
            SimilarEmail(
                subject=draft.subject_line or "",
                body_preview=(draft.body_text or "")[:BODY_PREVIEW_CHARS],
                status=draft.status.value,
                similarity=similarity.get(draft.id, 0.0),
            )
            for draft in drafts[:TOP_EMAILS]
        )
        html_formats = tuple(
            HtmlFormat(
                subject=draft.subject_line or "",
                html_snippet=(draft.body_html or "")[:HTML_SNIPPET_CHARS],
                similarity=similarity.get(draft.id, 0.0),
            )
            for draft in [draft for draft in drafts if draft.body_html][:TOP_FORMATS]
        )

        research_matches = self._repository.search_embeddings(
            user_id=user_id,
            source_type=RESEARCH_SOURCE,
            query_embedding=embedding,
            match_count=RESEARCH_MATCH_COUNT,
            threshold=MATCH_THRESHOLD,
        )
        research_similarity = {match.source_id: match.similarity for match in research_matches}
        topics = sorted(
            self._repository.get_research_topics(list(research_similarity)),
            key=lambda topic: research_similarity.get(topic.id, 0.0),
            reverse=True,
        )
        similar_research = tuple(
            SimilarResearch(
                title=topic.title,
                summary=(topic.summary or "")[:RESEARCH_SUMMARY_CHARS],
                similarity=research_similarity.get(topic.id, 0.0),
            )
            for topic in topics
        )

        return RetrievedContext(
            similar_emails=similar_emails,
            html_formats=html_formats,
            similar_research=similar_research,
        )


def format_context_section(context: RetrievedContext) -> str:
    """Prompt block describing retrieved context; empty string when nothing matched."""
    sections: list[str] = []

    if context.similar_emails:
        lines = "\n".join(
            f'{index}. [{email.status}] Subject: "{email.subject}"\n'
            f"   Preview: {email.body_preview}..."
            for index, email in enumerate(context.similar_emails, start=1)
        )
        sections.append(
            f"PAST SUCCESSFUL EMAILS (use as tone/style reference, do NOT copy):\n{lines}"
        )

    if context.html_formats:
        lines = "\n".join(
            f'{index}. "{fmt.subject}" format:\n   {fmt.html_snippet}...'
            for index, fmt in enumerate(context.html_formats, start=1)
        )
        sections.append(
            f"PROVEN HTML FORMATS FOR THIS ACCOUNT (match structure, vary content):\n{lines}"
        )

    if context.similar_research:
        lines = "\n".join(f"- {item.title}: {item.summary}" for item in context.similar_research)
        sections.append(f"RELATED RESEARCH (supplement current topics):\n{lines}")

    if not sections:
        return ""
    return "\n\n" + "\n\n".join(sections) + "\n"


class ContextIndexer:
    """Store embeddings for new drafts and topics so later retrievals can find them."""

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        embedder: Embedder,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._repository = repository
        self._embedder = embedder
        self._logger = logger or get_logger()

    def index_draft(self, draft: EmailDraft) -> bool:
        text = "\n".join(
            part for part in (draft.subject_line, draft.preview_text, draft.body_text) if part
        )
        return self._index(draft.user_id, EMAIL_SOURCE, draft.id, text)

    def index_topic(self, topic: ResearchTopic) -> bool:
        text = "\n".join(part for part in (topic.title, topic.summary) if part)
        return self._index(topic.user_id, RESEARCH_SOURCE, topic.id, text)

    def _index(self, user_id: str, source_type: str, source_id: str, text: str) -> bool:
        if not text.strip():
            return False
        try:
            embedding = self._embedder.embed(text)
            self._repository.upsert_embedding(
                user_id=user_id,
                source_type=source_type,
                source_id=source_id,
                embedding=embedding,
            )
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "embedding_index_failed",
                context=LogContext(user_id=user_id),
                source_type=source_type,
                source_id=source_id,
                error=str(exc),
            )
            return False
        return True
