"""Replayable records of drafts the writer had to reject."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class CompositionFailure:
    """Prompt inputs and raw model output for one rejected draft."""

    kind: str
    user_id: str
    template: str
    model: str
    reason: str
    inputs: dict[str, Any] = field(default_factory=dict)
    model_output: str | None = None

    def to_dict(self, recorded_at: datetime) -> dict[str, Any]:
        return {
            "stage": self.kind,
            "user_id": self.user_id,
            "template": self.template,
            "model": self.model,
            "error_summary": self.reason,
            "input_payload": self.inputs,
            "last_model_output": self.model_output,
            "created_at": recorded_at.isoformat(),
        }


def record_composition_failure(
    failure_dir: Path,
    failure: CompositionFailure,
    *,
    now: datetime | None = None,
) -> Path:
    """Write ``composition_<kind>_<user>_<timestamp>.json`` and return its path."""
    recorded_at = now or datetime.now(UTC)
    failure_dir.mkdir(parents=True, exist_ok=True)
    stamp = recorded_at.strftime("%Y%m%dT%H%M%S%fZ")
    path = failure_dir / f"composition_{failure.kind}_{failure.user_id}_{stamp}.json"
    body = json.dumps(failure.to_dict(recorded_at), indent=2, sort_keys=True, default=str)
    path.write_text(body, encoding="utf-8")
    return path
