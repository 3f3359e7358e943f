"""Centralized configuration loading for the fundraising email pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""


VALID_DROP_DAYS = {"mon", "tue", "wed", "thu", "fri", "sat", "sun"}
VALID_DISCOVERY_PROVIDERS = {"sonar", "newsapi"}

DEFAULT_OPENAI_MODEL = "gpt-4o"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_REPLY_TO = "noreply@example.com"


@dataclass(frozen=True)
class AppConfig:
    """Typed application configuration loaded from environment variables."""

    openai_api_key: str
    perplexity_api_key: str | None
    newsapi_api_key: str | None
    discovery_provider: str
    openai_model: str
    embedding_model: str
    row_store_db_path: Path
    task_state_db_path: Path
    failure_log_dir: Path
    timezone: str
    weekly_drop_day: str
    weekly_drop_hour: int
    discovery_interval_hours: int
    delivery_send_hour: int
    worker_poll_seconds: int
    max_external_retries: int
    task_max_duration_seconds: int
    default_reply_to: str
    research_vocabulary_path: Path | None


_REQUIRED_ENV_VARS = (
    "OPENAI_API_KEY",
    "ROW_STORE_DB_PATH",
    "TASK_STATE_DB_PATH",
    "FAILURE_LOG_DIR",
    "TIMEZONE",
)


def _get_required_env(name: str) -> str:
    import os

    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        raise ConfigError(f"Missing required environment variable: {name}")
    return raw.strip()


def _get_optional_env(name: str) -> str | None:
    import os

    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _parse_int(name: str, raw: str, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer value for {name}: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got {value}")
    return value


def _optional_int(
    name: str,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = _get_optional_env(name)
    if raw is None:
        return default
    return _parse_int(name, raw, minimum=minimum, maximum=maximum)


def _validate_required_envs() -> None:
    for name in _REQUIRED_ENV_VARS:
        _get_required_env(name)


@lru_cache(maxsize=1)
def get_config(load_dotenv_file: bool = True) -> AppConfig:
    """Load and cache app configuration."""
    if load_dotenv_file:
        load_dotenv()

    _validate_required_envs()

    drop_day = (_get_optional_env("WEEKLY_DROP_DAY") or "thu").lower()
    if drop_day not in VALID_DROP_DAYS:
        raise ConfigError(
            f"Invalid WEEKLY_DROP_DAY: {drop_day!r}. Expected one of {sorted(VALID_DROP_DAYS)}"
        )

    provider = (_get_optional_env("DISCOVERY_PROVIDER") or "sonar").lower()
    if provider not in VALID_DISCOVERY_PROVIDERS:
        raise ConfigError(
            f"Invalid DISCOVERY_PROVIDER: {provider!r}. "
            f"Expected one of {sorted(VALID_DISCOVERY_PROVIDERS)}"
        )

    vocabulary_path = _get_optional_env("RESEARCH_VOCABULARY_PATH")

    return AppConfig(
        openai_api_key=_get_required_env("OPENAI_API_KEY"),
        perplexity_api_key=_get_optional_env("PERPLEXITY_API_KEY"),
        newsapi_api_key=_get_optional_env("NEWSAPI_API_KEY"),
        discovery_provider=provider,
        openai_model=_get_optional_env("OPENAI_MODEL") or DEFAULT_OPENAI_MODEL,
        embedding_model=_get_optional_env("EMBEDDING_MODEL") or DEFAULT_EMBEDDING_MODEL,
        row_store_db_path=Path(_get_required_env("ROW_STORE_DB_PATH")),
        task_state_db_path=Path(_get_required_env("TASK_STATE_DB_PATH")),
        failure_log_dir=Path(_get_required_env("FAILURE_LOG_DIR")),
        timezone=_get_required_env("TIMEZONE"),
        weekly_drop_day=drop_day,
        weekly_drop_hour=_optional_int("WEEKLY_DROP_HOUR", 12, minimum=0, maximum=23),
        discovery_interval_hours=_optional_int("DISCOVERY_INTERVAL_HOURS", 4, minimum=1),
        delivery_send_hour=_optional_int("DELIVERY_SEND_HOUR", 9, minimum=0, maximum=23),
        worker_poll_seconds=_optional_int("WORKER_POLL_SECONDS", 2, minimum=1),
        max_external_retries=_optional_int("MAX_EXTERNAL_RETRIES", 3, minimum=1),
        task_max_duration_seconds=_optional_int("TASK_MAX_DURATION_SECONDS", 300, minimum=1),
        default_reply_to=_get_optional_env("DEFAULT_REPLY_TO") or DEFAULT_REPLY_TO,
        research_vocabulary_path=Path(vocabulary_path) if vocabulary_path else None,
    )


def reset_config_cache() -> None:
    """Clear memoized configuration for tests and process reloads."""
    get_config.cache_clear()
