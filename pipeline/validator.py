"""Parsing and validation helpers for model and provider output."""

from __future__ import annotations

import json
import re
from typing import Any

from bs4 import BeautifulSoup
from jsonschema import ValidationError, validate


class ContentValidationError(ValueError):
    """Raised when generated content fails parsing or schema checks."""


_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?\s*```")
_BLOCK_TAGS = ("p", "div", "tr", "li", "h1", "h2", "h3", "h4", "h5", "h6", "table")


def extract_json_payload(raw_text: str) -> dict[str, Any]:
    """Extract and parse a JSON object from model output text.

    Uses three strategies in order:
    1. Direct ``json.loads`` on the full text.
    2. Extract from a markdown code fence (````` ```json ... ``` `````).
    3. Brace-depth scanning to find the first balanced ``{…}`` block.
    """
    text = raw_text.strip()
    if not text:
        raise ContentValidationError("Model returned empty response")

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    fence_match = _FENCE_PATTERN.search(text)
    if fence_match:
        inner = fence_match.group(1).strip()
        if inner.startswith("{"):
            try:
                parsed = json.loads(inner)
                if isinstance(parsed, dict):
                    return parsed
            except json.JSONDecodeError:
                pass

    extracted = _extract_first_balanced(text, "{", "}")
    if extracted is None:
        raise ContentValidationError("No JSON object found in model output")

    parsed = json.loads(extracted)
    if not isinstance(parsed, dict):
        raise ContentValidationError("Top-level JSON payload must be an object")
    return parsed


def extract_json_array(raw_text: str) -> list[Any]:
    """Extract a JSON array from an answer that may wrap it in prose or a fence."""
    text = raw_text.strip()
    if not text:
        raise ContentValidationError("Provider returned empty answer")

    try:
        parsed = json.loads(text)
        if isinstance(parsed, list):
            return parsed
    except json.JSONDecodeError:
        pass

    fence_match = _FENCE_PATTERN.search(text)
    if fence_match:
        inner = fence_match.group(1).strip()
        if inner.startswith("["):
            try:
                parsed = json.loads(inner)
                if isinstance(parsed, list):
                    return parsed
            except json.JSONDecodeError:
                pass

    extracted = _extract_first_balanced(text, "[", "]")
    if extracted is None:
        raise ContentValidationError("No JSON array found in provider answer")
    return json.loads(extracted)


def _extract_first_balanced(text: str, opener: str, closer: str) -> str | None:
    """Find the first balanced block that also parses as JSON.

    Tracks depth while respecting JSON string literals so that brackets
    inside quoted strings are not counted.
    """
    start = text.find(opener)
    while start != -1:
        depth = 0
        in_string = False
        escape_next = False
        end = None

        for idx in range(start, len(text)):
            char = text[idx]

            if escape_next:
                escape_next = False
                continue
            if char == "\\":
                if in_string:
                    escape_next = True
                continue
            if char == '"':
                in_string = not in_string
                continue
            if in_string:
                continue

            if char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    end = idx
                    break

        if end is None:
            return None
        candidate = text[start : end + 1]
        try:
            json.loads(candidate)
            return candidate
        except json.JSONDecodeError:
            start = text.find(opener, end + 1)
    return None


def validate_json_payload(payload: dict[str, Any], schema: dict[str, object]) -> None:
    """Validate payload against schema and surface clean error messages."""
    try:
        validate(instance=payload, schema=schema)
    except ValidationError as exc:
        path = ".".join(str(part) for part in exc.path)
        context = f" at {path}" if path else ""
        raise ContentValidationError(f"Schema validation failed{context}: {exc.message}") from exc


def html_to_text(html: str) -> str:
    """Plain-text rendering of an HTML body, one block per paragraph."""
    soup = BeautifulSoup(html, "html.parser")
    for node in soup(["head", "script", "style"]):
        node.decompose()
    for node in soup.find_all("br"):
        node.replace_with("\n")
    for node in soup.find_all(_BLOCK_TAGS):
        node.append("\n")
    lines = [" ".join(line.split()) for line in soup.get_text().splitlines()]
    return "\n\n".join(line for line in lines if line)


def truncate_sample(text: str | None, limit: int = 200) -> str:
    if not text:
        return ""
    return text[:limit]
