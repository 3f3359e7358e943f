"""Swappable lookup tables for research query building and source scoring."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

DEFAULT_STANCE_TERMS: tuple[str, ...] = (
    "healthcare",
    "health care",
    "medicare",
    "medicaid",
    "climate",
    "environment",
    "clean energy",
    "green",
    "education",
    "schools",
    "student",
    "immigration",
    "border",
    "economy",
    "jobs",
    "inflation",
    "wages",
    "gun",
    "firearms",
    "second amendment",
    "abortion",
    "reproductive",
    "women's health",
    "housing",
    "rent",
    "affordable housing",
    "criminal justice",
    "police",
    "public safety",
    "veterans",
    "military",
    "defense",
    "taxes",
    "tax reform",
    "voting rights",
    "election integrity",
    "infrastructure",
    "transportation",
    "social security",
    "retirement",
)

DEFAULT_TIER_1_DOMAINS: tuple[str, ...] = (
    "nytimes.com",
    "washingtonpost.com",
    "reuters.com",
    "apnews.com",
)

DEFAULT_TIER_2_DOMAINS: tuple[str, ...] = (
    "politico.com",
    "thehill.com",
    "cnn.com",
    "npr.org",
    "axios.com",
    "fec.gov",
    "opensecrets.org",
    "nbcnews.com",
)


class VocabularyError(ValueError):
    """Raised when a vocabulary override file is malformed."""


@dataclass(frozen=True)
class ResearchVocabulary:
    """Stance keywords and outlet tiers used by discovery and scoring."""

    stance_terms: tuple[str, ...] = DEFAULT_STANCE_TERMS
    tier_1_domains: tuple[str, ...] = DEFAULT_TIER_1_DOMAINS
    tier_2_domains: tuple[str, ...] = DEFAULT_TIER_2_DOMAINS

    @property
    def search_domains(self) -> tuple[str, ...]:
        return self.tier_1_domains + self.tier_2_domains

    def match_stances(self, text: str | None) -> list[str]:
        """Vocabulary terms appearing in ``text`` (case-insensitive substring match)."""
        if not text:
            return []
        lowered = text.lower()
        return [term for term in self.stance_terms if term in lowered]


def load_vocabulary(path: Path | None) -> ResearchVocabulary:
    """Load a JSON override; keys omitted from the file keep their defaults."""
    if path is None:
        return ResearchVocabulary()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise VocabularyError(f"Invalid vocabulary JSON in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise VocabularyError(f"Vocabulary file {path} must contain a JSON object")

    defaults = ResearchVocabulary()
    return ResearchVocabulary(
        stance_terms=_string_tuple(raw, "stance_terms", defaults.stance_terms),
        tier_1_domains=_string_tuple(raw, "tier_1_domains", defaults.tier_1_domains),
        tier_2_domains=_string_tuple(raw, "tier_2_domains", defaults.tier_2_domains),
    )


def _string_tuple(raw: dict[str, object], key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = raw.get(key)
    if value is None:
        return default
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise VocabularyError(f"Vocabulary key {key!r} must be a list of strings")
    return tuple(item.strip().lower() for item in value if item.strip())
