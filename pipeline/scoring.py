"""Relevance scoring for discovered and searched research topics."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from urllib.parse import urlparse

from pipeline.vocabulary import ResearchVocabulary

MAX_SCORE = 10.0
ON_DEMAND_SCORE_CEILING = 15.0

DISCOVERY_BASE_SCORE = 2.0
DISCOVERY_TIER_BONUS = {1: 4.0, 2: 2.5, 3: 1.0}
# (max age in hours, bonus); first matching bracket wins.
DISCOVERY_RECENCY_BRACKETS: tuple[tuple[float, float], ...] = (
    (4.0, 2.5),
    (12.0, 1.5),
    (24.0, 1.0),
    (48.0, 0.5),
)
DISCOVERY_DESCRIPTION_BONUS = 0.5
DISCOVERY_IMAGE_BONUS = 0.5

ON_DEMAND_TITLE_TERM = 3.0
ON_DEMAND_SNIPPET_TERM = 2.0
ON_DEMAND_TIER_BONUS = {1: 3.0, 2: 2.0}
# (max age in days, bonus)
ON_DEMAND_RECENCY_BRACKETS: tuple[tuple[float, float], ...] = (
    (1.0, 4.0),
    (3.0, 3.0),
    (7.0, 2.0),
)


def source_domain(url: str) -> str:
    """Host of ``url`` without a leading ``www.``; empty for unparseable input."""
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host


def domain_matches(domain: str, candidates: Sequence[str]) -> bool:
    """Exact host match or any subdomain of a candidate."""
    if not domain:
        return False
    return any(domain == candidate or domain.endswith(f".{candidate}") for candidate in candidates)


def source_tier(domain: str, vocabulary: ResearchVocabulary) -> int | None:
    """1 or 2 for listed outlets, 3 for any other known domain, None without a domain."""
    if not domain:
        return None
    if domain_matches(domain, vocabulary.tier_1_domains):
        return 1
    if domain_matches(domain, vocabulary.tier_2_domains):
        return 2
    return 3


def clamp_score(value: float) -> float:
    return round(min(max(value, 0.0), MAX_SCORE), 2)


def score_discovery_result(
    *,
    domain: str,
    published_at: datetime | None,
    has_description: bool,
    has_image: bool,
    now: datetime,
    vocabulary: ResearchVocabulary,
) -> float:
    """Base + outlet tier + recency + completeness, clamped to [0, 10]."""
    score = DISCOVERY_BASE_SCORE
    tier = source_tier(domain, vocabulary)
    if tier is not None:
        score += DISCOVERY_TIER_BONUS[tier]

    if published_at is not None:
        age_hours = max((now - published_at).total_seconds(), 0.0) / 3600
        for max_hours, bonus in DISCOVERY_RECENCY_BRACKETS:
            if age_hours <= max_hours:
                score += bonus
                break

    if has_description:
        score += DISCOVERY_DESCRIPTION_BONUS
    if has_image:
        score += DISCOVERY_IMAGE_BONUS
    return clamp_score(score)


def score_search_result(
    *,
    query: str,
    title: str,
    snippet: str,
    domain: str,
    published_at: datetime | None,
    now: datetime,
    vocabulary: ResearchVocabulary,
) -> float:
    """Additive keyword/recency/tier score normalized against a fixed ceiling."""
    terms = [term for term in query.lower().split() if term]
    title_lower = title.lower()
    snippet_lower = snippet.lower()

    raw = 0.0
    raw += sum(ON_DEMAND_TITLE_TERM for term in terms if term in title_lower)
    raw += sum(ON_DEMAND_SNIPPET_TERM for term in terms if term in snippet_lower)

    if published_at is not None:
        age_days = max((now - published_at).total_seconds(), 0.0) / 86400
        for max_days, bonus in ON_DEMAND_RECENCY_BRACKETS:
            if age_days <= max_days:
                raw += bonus
                break

    tier = source_tier(domain, vocabulary)
    raw += ON_DEMAND_TIER_BONUS.get(tier or 0, 0.0)

    return clamp_score(min(raw / ON_DEMAND_SCORE_CEILING, 1.0) * MAX_SCORE)
