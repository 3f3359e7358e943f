"""Tests for config loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from config import ConfigError, get_config, reset_config_cache

REQUIRED_ENV = {
    "OPENAI_API_KEY": "sk-test",
    "ROW_STORE_DB_PATH": "data/row_store.db",
    "TASK_STATE_DB_PATH": "data/task_state.db",
    "FAILURE_LOG_DIR": "data/failures",
    "TIMEZONE": "America/Chicago",
}

OPTIONAL_ENV = (
    "PERPLEXITY_API_KEY",
    "NEWSAPI_API_KEY",
    "DISCOVERY_PROVIDER",
    "WEEKLY_DROP_DAY",
    "WEEKLY_DROP_HOUR",
    "DELIVERY_SEND_HOUR",
    "RESEARCH_VOCABULARY_PATH",
)


def _apply_required_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key, value in REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)
    for key in OPTIONAL_ENV:
        monkeypatch.delenv(key, raising=False)


def test_get_config_parses_values(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)
    monkeypatch.setenv("WEEKLY_DROP_DAY", "MON")
    monkeypatch.setenv("WEEKLY_DROP_HOUR", "7")
    monkeypatch.setenv("DISCOVERY_PROVIDER", "newsapi")
    monkeypatch.setenv("NEWSAPI_API_KEY", "news-key")

    config = get_config(load_dotenv_file=False)

    assert config.weekly_drop_day == "mon"
    assert config.weekly_drop_hour == 7
    assert config.discovery_provider == "newsapi"
    assert config.newsapi_api_key == "news-key"
    assert config.row_store_db_path == Path("data/row_store.db")
    reset_config_cache()


def test_get_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)

    config = get_config(load_dotenv_file=False)

    assert config.weekly_drop_day == "thu"
    assert config.weekly_drop_hour == 12
    assert config.discovery_provider == "sonar"
    assert config.delivery_send_hour == 9
    assert config.perplexity_api_key is None
    assert config.research_vocabulary_path is None
    reset_config_cache()


def test_get_config_missing_required_env_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
        get_config(load_dotenv_file=False)
    reset_config_cache()


def test_get_config_rejects_invalid_drop_day(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)
    monkeypatch.setenv("WEEKLY_DROP_DAY", "someday")

    with pytest.raises(ConfigError, match="WEEKLY_DROP_DAY"):
        get_config(load_dotenv_file=False)
    reset_config_cache()


def test_get_config_rejects_out_of_range_hour(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)
    monkeypatch.setenv("DELIVERY_SEND_HOUR", "24")

    with pytest.raises(ConfigError, match="DELIVERY_SEND_HOUR"):
        get_config(load_dotenv_file=False)
    reset_config_cache()


def test_get_config_rejects_unknown_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_config_cache()
    _apply_required_env(monkeypatch)
    monkeypatch.setenv("DISCOVERY_PROVIDER", "bing")

    with pytest.raises(ConfigError, match="DISCOVERY_PROVIDER"):
        get_config(load_dotenv_file=False)
    reset_config_cache()
