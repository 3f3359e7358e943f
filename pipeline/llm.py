"""OpenAI-compatible LLM service wrappers (OpenAI and Perplexity Sonar)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, cast

from openai import OpenAI

from config import AppConfig
from pipeline.resilience import ResiliencePolicy

logger = logging.getLogger(__name__)

PERPLEXITY_BASE_URL = "https://api.perplexity.ai"
DEFAULT_SONAR_MODEL = "sonar"
EMBEDDING_INPUT_LIMIT = 8000


@dataclass(frozen=True)
class LLMResult:
    """Normalized LLM response payload."""

    model: str
    content: str
    citations: tuple[str, ...]
    raw_response: dict[str, Any]


class LLMClient:
    """Chat and embedding client with retry and timeout policy."""

    def __init__(
        self,
        *,
        name: str,
        api_key: str,
        max_attempts: int,
        base_url: str | None = None,
        default_model: str,
        embedding_model: str | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.name = name
        self.default_model = default_model
        self._embedding_model = embedding_model
        self._client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout_seconds)
        self._resilience = ResiliencePolicy(name=f"{name}_llm", max_attempts=max_attempts)

    def chat(
        self,
        *,
        system_prompt: str | None,
        user_prompt: str,
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 1800,
        json_mode: bool = False,
        extra_body: dict[str, Any] | None = None,
    ) -> LLMResult:
        """Execute a chat completion request and normalize output."""
        model_name = model or self.default_model

        def _operation() -> Any:
            messages: list[dict[str, str]] = []
            if system_prompt:
                messages.append({"role": "system", "content": system_prompt})
            messages.append({"role": "user", "content": user_prompt})
            options: dict[str, Any] = {}
            if json_mode:
                options["response_format"] = {"type": "json_object"}
            if extra_body:
                options["extra_body"] = extra_body

            return self._client.chat.completions.create(
                model=model_name,
                messages=cast(Any, messages),
                temperature=temperature,
                max_tokens=max_tokens,
                **options,
            )

        response = self._resilience.execute(_operation)
        result = _normalize_response(model=model_name, response=response)
        if not result.content:
            logger.warning(
                "LLM returned empty content for model=%s (raw keys: %s)",
                model_name,
                list(result.raw_response.keys()) if result.raw_response else "none",
            )
        return result

    def embed(self, text: str) -> list[float]:
        """Embed text with the configured embedding model."""
        if not self._embedding_model:
            raise ValueError(f"{self.name} client has no embedding model configured")
        model_name = self._embedding_model

        def _operation() -> Any:
            return self._client.embeddings.create(
                model=model_name,
                input=text[:EMBEDDING_INPUT_LIMIT],
            )

        response = self._resilience.execute(_operation)
        data = getattr(response, "data", None) or []
        if not data:
            raise ValueError(f"{self.name} returned no embedding data")
        return [float(value) for value in data[0].embedding]


def build_openai_client(config: AppConfig) -> LLMClient:
    return LLMClient(
        name="openai",
        api_key=config.openai_api_key,
        max_attempts=config.max_external_retries,
        default_model=config.openai_model,
        embedding_model=config.embedding_model,
    )


def build_sonar_client(config: AppConfig) -> LLMClient | None:
    """Sonar chat client, or ``None`` when no Perplexity key is configured."""
    if not config.perplexity_api_key:
        return None
    return LLMClient(
        name="perplexity",
        api_key=config.perplexity_api_key,
        base_url=PERPLEXITY_BASE_URL,
        max_attempts=config.max_external_retries,
        default_model=DEFAULT_SONAR_MODEL,
    )


def _normalize_response(*, model: str, response: Any) -> LLMResult:
    raw_dict = (
        response.model_dump() if hasattr(response, "model_dump") else _coerce_to_dict(response)
    )
    content = _extract_content(response)
    citations = _extract_citations(raw_dict)
    return LLMResult(
        model=model,
        content=content,
        citations=tuple(citations),
        raw_response=raw_dict,
    )


def _extract_content(response: Any) -> str:
    choices = getattr(response, "choices", None)
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    if message is None:
        return ""
    content = getattr(message, "content", "")
    if content is None:
        return ""
    return content if isinstance(content, str) else str(content)


def _extract_citations(raw: dict[str, Any]) -> list[str]:
    candidates = raw.get("citations")
    if isinstance(candidates, list):
        return [str(item) for item in candidates if isinstance(item, (str, bytes))]
    return []


def _coerce_to_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value

    if hasattr(value, "__dict__"):
        return {k: v for k, v in vars(value).items() if not k.startswith("_")}

    try:
        return json.loads(str(value))
    except json.JSONDecodeError:
        return {"raw": str(value)}
