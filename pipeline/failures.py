"""Error taxonomy and dead-letter utilities for task failures."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import requests

_BODY_SAMPLE_CHARS = 500


class PipelineError(RuntimeError):
    """Base class for pipeline failures."""


class PermanentTaskError(PipelineError):
    """Missing upstream data or a guard violation; never retried."""


class TransientTaskError(PipelineError):
    """Failure expected to clear on a later attempt."""


class ProviderResponseError(PermanentTaskError):
    """Provider answered 2xx but the body could not be interpreted."""


class SendChecklistError(PermanentTaskError):
    """Mailchimp reported the campaign is not ready to send."""


class RapidResponseDisabledError(PermanentTaskError):
    """User has no active subscription with rapid response enabled."""


class PollTimeoutError(TransientTaskError):
    """Provider never left its asynchronous calculating state."""


class TaskDurationExceeded(TransientTaskError):
    """Active execution time of a task invocation exceeded its budget."""


class DraftParseError(PipelineError):
    """Model output could not be turned into a draft."""

    def __init__(self, message: str, *, sample: str | None = None) -> None:
        super().__init__(message)
        self.sample = sample


class ProviderHTTPError(PipelineError):
    """Non-2xx response from an external provider."""

    def __init__(self, provider: str, status_code: int, body: str) -> None:
        self.provider = provider
        self.status_code = status_code
        self.body = body
        super().__init__(f"{provider} HTTP {status_code}: {body[:_BODY_SAMPLE_CHARS]}")

    @property
    def retryable(self) -> bool:
        return self.status_code >= 500 or self.status_code in {408, 429}


class FailureKind(StrEnum):
    """How the task runtime should react to an exception."""

    PERMANENT = "permanent"
    NON_RETRYABLE = "non_retryable"
    RETRYABLE = "retryable"


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception to the retry behaviour it deserves."""
    if isinstance(exc, PermanentTaskError):
        return FailureKind.PERMANENT
    if isinstance(exc, ProviderHTTPError):
        return FailureKind.RETRYABLE if exc.retryable else FailureKind.NON_RETRYABLE
    if isinstance(exc, (TransientTaskError, requests.RequestException, OSError, TimeoutError)):
        return FailureKind.RETRYABLE
    # Unknown errors get the benefit of the doubt.
    return FailureKind.RETRYABLE


def is_retryable_exception(exc: BaseException) -> bool:
    """Step-level retry predicate: network faults and retryable HTTP statuses only."""
    if isinstance(exc, ProviderHTTPError):
        return exc.retryable
    if isinstance(exc, requests.RequestException):
        return isinstance(exc, (requests.ConnectionError, requests.Timeout))
    return isinstance(exc, (OSError, TimeoutError))


def save_dead_letter(
    *,
    failure_dir: Path,
    stage: str,
    run_id: str,
    error: str,
    payload: dict[str, Any] | None = None,
) -> Path:
    """Persist a dead-letter event payload for manual replay/recovery."""
    failure_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
    out_path = failure_dir / f"failure_{run_id}_{stage}_{timestamp}.json"
    body = {
        "run_id": run_id,
        "stage": stage,
        "error": error,
        "payload": payload or {},
        "created_at": datetime.now(UTC).isoformat(),
    }
    out_path.write_text(json.dumps(body, indent=2, sort_keys=True, default=str), encoding="utf-8")
    return out_path
