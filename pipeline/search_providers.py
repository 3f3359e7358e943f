"""Search/news provider adapters normalized to a common result shape.

Every adapter returns a ``SearchSuccess`` or a ``SearchFailure``; provider
errors, missing keys and unparseable answers never raise out of ``search``.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import requests

from config import AppConfig
from pipeline.failures import PipelineError, ProviderHTTPError
from pipeline.llm import LLMClient, build_sonar_client
from pipeline.resilience import ResiliencePolicy
from pipeline.validator import ContentValidationError, extract_json_array, truncate_sample

PERPLEXITY_SEARCH_URL = "https://api.perplexity.ai/search"
NEWSAPI_EVERYTHING_URL = "https://newsapi.org/v2/everything"

SONAR_SYSTEM_PROMPT = (
    "You are a political research assistant. Search the web for current news. "
    "Return ONLY a valid JSON array of objects, each with keys: title, summary, source_url. "
    "Include 5-10 distinct news stories. If exact matches are scarce, broaden to related "
    "political news in the same region or policy area. No markdown formatting, no "
    "explanation text, just the raw JSON array."
)

MISSING_API_KEY = "missing_api_key"


@dataclass(frozen=True)
class SearchResult:
    """Provider-neutral search hit."""

    title: str
    summary: str
    url: str
    published_at: datetime | None = None
    image_url: str | None = None


@dataclass(frozen=True)
class SearchSuccess:
    provider: str
    query: str
    results: tuple[SearchResult, ...]


@dataclass(frozen=True)
class SearchFailure:
    provider: str
    query: str
    reason: str
    sample: str | None = None


SearchOutcome = SearchSuccess | SearchFailure


class SearchProvider(Protocol):
    name: str

    def search(self, query: str, *, domains: Sequence[str] = ()) -> SearchOutcome: ...


class SonarSearchProvider:
    """Chat-style search assistant that answers with a JSON array of stories."""

    name = "sonar"

    def __init__(self, client: LLMClient | None, *, recency: str = "day") -> None:
        self._client = client
        self._recency = recency

    def search(self, query: str, *, domains: Sequence[str] = ()) -> SearchOutcome:
        if self._client is None:
            return SearchFailure(self.name, query, MISSING_API_KEY)

        extra_body: dict[str, Any] = {"search_recency_filter": self._recency}
        if domains:
            extra_body["search_domain_filter"] = list(domains)
        try:
            response = self._client.chat(
                system_prompt=SONAR_SYSTEM_PROMPT,
                user_prompt=query,
                temperature=0.2,
                max_tokens=2500,
                extra_body=extra_body,
            )
        except PipelineError as exc:
            return SearchFailure(self.name, query, f"request_failed: {exc}")
        return parse_sonar_answer(query, response.content, citations=response.citations)


def parse_sonar_answer(
    query: str, content: str, *, citations: Sequence[str] = ()
) -> SearchOutcome:
    """Parse the story array; an item without a URL takes the citation at its position."""
    try:
        items = extract_json_array(content)
    except ContentValidationError as exc:
        return SearchFailure("sonar", query, f"parse_error: {exc}", truncate_sample(content))

    results: list[SearchResult] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        title = str(item.get("title") or "").strip()
        summary = str(item.get("summary") or "").strip()
        url = str(item.get("source_url") or item.get("url") or "").strip()
        if not url and index < len(citations):
            url = citations[index]
        if not title or not summary or not url:
            continue
        results.append(
            SearchResult(
                title=title,
                summary=summary,
                url=url,
                published_at=_parse_timestamp(item.get("published_at") or item.get("date")),
            )
        )
    if not results and items:
        return SearchFailure("sonar", query, "no_usable_items", truncate_sample(content))
    return SearchSuccess("sonar", query, tuple(results))


class PerplexitySearchProvider:
    """Structured Perplexity Search API (``POST /search``)."""

    name = "perplexity_search"

    def __init__(
        self,
        *,
        api_key: str | None,
        max_attempts: int,
        recency: str = "week",
        max_results: int = 10,
        request_timeout_seconds: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._recency = recency
        self._max_results = max_results
        self._request_timeout_seconds = request_timeout_seconds
        self._resilience = ResiliencePolicy(name=self.name, max_attempts=max_attempts)

    def search(self, query: str, *, domains: Sequence[str] = ()) -> SearchOutcome:
        if not self._api_key:
            return SearchFailure(self.name, query, MISSING_API_KEY)

        body: dict[str, Any] = {
            "query": query,
            "max_results": self._max_results,
            "search_recency_filter": self._recency,
        }
        if domains:
            body["search_domain_filter"] = list(domains)

        def _operation() -> requests.Response:
            response = requests.post(
                PERPLEXITY_SEARCH_URL,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json=body,
                timeout=self._request_timeout_seconds,
            )
            if not 200 <= response.status_code < 300:
                raise ProviderHTTPError(self.name, response.status_code, response.text)
            return response

        try:
            payload = self._resilience.execute(_operation).json()
        except (PipelineError, ValueError) as exc:
            return SearchFailure(self.name, query, f"request_failed: {exc}")

        raw_results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(raw_results, list):
            return SearchFailure(
                self.name, query, "parse_error: missing results", truncate_sample(str(payload))
            )

        results: list[SearchResult] = []
        for item in raw_results:
            if not isinstance(item, dict) or not item.get("url") or not item.get("title"):
                continue
            results.append(
                SearchResult(
                    title=str(item["title"]).strip(),
                    summary=str(item.get("snippet") or "").strip(),
                    url=str(item["url"]).strip(),
                    published_at=_parse_timestamp(item.get("date") or item.get("last_updated")),
                )
            )
        return SearchSuccess(self.name, query, tuple(results))


class NewsApiProvider:
    """NewsAPI ``/v2/everything`` keyword search over recent articles."""

    name = "newsapi"

    def __init__(
        self,
        *,
        api_key: str | None,
        max_attempts: int,
        lookback_hours: int = 48,
        page_size: int = 10,
        request_timeout_seconds: float = 20.0,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._api_key = api_key
        self._lookback_hours = lookback_hours
        self._page_size = page_size
        self._request_timeout_seconds = request_timeout_seconds
        self._now = now or (lambda: datetime.now(UTC))
        self._resilience = ResiliencePolicy(name=self.name, max_attempts=max_attempts)

    def search(self, query: str, *, domains: Sequence[str] = ()) -> SearchOutcome:
        if not self._api_key:
            return SearchFailure(self.name, query, MISSING_API_KEY)

        params: dict[str, Any] = {
            "q": query,
            "language": "en",
            "sortBy": "publishedAt",
            "pageSize": self._page_size,
            "from": (self._now() - timedelta(hours=self._lookback_hours)).isoformat(),
        }
        if domains:
            params["domains"] = ",".join(domains)

        def _operation() -> requests.Response:
            response = requests.get(
                NEWSAPI_EVERYTHING_URL,
                headers={"X-Api-Key": self._api_key or ""},
                params=params,
                timeout=self._request_timeout_seconds,
            )
            if not 200 <= response.status_code < 300:
                raise ProviderHTTPError(self.name, response.status_code, response.text)
            return response

        try:
            payload = self._resilience.execute(_operation).json()
        except (PipelineError, ValueError) as exc:
            return SearchFailure(self.name, query, f"request_failed: {exc}")

        if not isinstance(payload, dict) or payload.get("status") != "ok":
            return SearchFailure(
                self.name, query, "provider_error", truncate_sample(str(payload))
            )

        results: list[SearchResult] = []
        for article in payload.get("articles") or []:
            if not isinstance(article, dict) or not article.get("url") or not article.get("title"):
                continue
            results.append(
                SearchResult(
                    title=str(article["title"]).strip(),
                    summary=str(article.get("description") or "").strip(),
                    url=str(article["url"]).strip(),
                    published_at=_parse_timestamp(article.get("publishedAt")),
                    image_url=article.get("urlToImage") or None,
                )
            )
        return SearchSuccess(self.name, query, tuple(results))


def build_discovery_provider(config: AppConfig) -> SearchProvider:
    if config.discovery_provider == "newsapi":
        return NewsApiProvider(
            api_key=config.newsapi_api_key,
            max_attempts=config.max_external_retries,
        )
    return SonarSearchProvider(build_sonar_client(config))


def build_topic_search_provider(config: AppConfig) -> SearchProvider:
    return PerplexitySearchProvider(
        api_key=config.perplexity_api_key,
        max_attempts=config.max_external_retries,
    )


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
