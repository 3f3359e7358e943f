"""Structured logging helpers for task and step observability."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

_LOGGER_NAME = "fundraising_pipeline"
_CONTEXT_FIELDS = ("run_id", "task_name", "user_id", "draft_id")
_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


@dataclass(frozen=True)
class LogContext:
    """Context values merged into every structured log event."""

    run_id: str | None = None
    task_name: str | None = None
    user_id: str | None = None
    draft_id: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def bind(self, **values: Any) -> LogContext:
        """Return a copy with known fields replaced and the rest added to extras."""
        known = {key: values.pop(key) for key in _CONTEXT_FIELDS if key in values}
        return replace(self, **known, extras={**self.extras, **values})

    def as_fields(self) -> dict[str, Any]:
        fields = {name: getattr(self, name) for name in _CONTEXT_FIELDS if getattr(self, name)}
        return {**fields, **self.extras}


class StructuredLogger:
    """Emit JSON logs with a stable event shape for run reconstruction."""

    def __init__(self) -> None:
        self._logger = logging.getLogger(_LOGGER_NAME)
        if not self._logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)
        self._logger.setLevel(logging.INFO)

    def info(self, event: str, *, context: LogContext | None = None, **fields: Any) -> None:
        self._emit("info", event, context=context, fields=fields)

    def warning(self, event: str, *, context: LogContext | None = None, **fields: Any) -> None:
        self._emit("warning", event, context=context, fields=fields)

    def error(self, event: str, *, context: LogContext | None = None, **fields: Any) -> None:
        self._emit("error", event, context=context, fields=fields)

    def _emit(
        self,
        level: str,
        event: str,
        *,
        context: LogContext | None,
        fields: dict[str, Any],
    ) -> None:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": level,
            "event": event,
        }
        if context is not None:
            payload.update(context.as_fields())
        payload.update(fields)
        self._logger.log(_LEVELS[level], json.dumps(payload, sort_keys=True, default=str))


_default_logger: StructuredLogger | None = None


def get_logger() -> StructuredLogger:
    global _default_logger
    if _default_logger is None:
        _default_logger = StructuredLogger()
    return _default_logger
