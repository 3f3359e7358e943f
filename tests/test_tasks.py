"""Tests for task registration and payload handling."""

from __future__ import annotations

from typing import Any

from config import AppConfig
from models import DeliveryResult, EspProvider, SendDraftPayload, TaskName, TaskStatus
from pipeline.row_store import RowStore
from pipeline.run_state import TaskRunStore
from pipeline.task_runtime import TaskContext
from pipeline.tasks import RETRY_POLICIES, PipelineComponents, build_task_runtime


class _FakeMailchimp:
    def __init__(self) -> None:
        self.payloads: list[SendDraftPayload] = []

    def run(self, ctx: TaskContext, payload: SendDraftPayload) -> DeliveryResult:
        self.payloads.append(payload)
        return DeliveryResult(
            draft_id=payload.draft_id,
            provider=EspProvider.MAILCHIMP,
            provider_id="camp-1",
            action="sent",
        )


def _runtime(app_config: AppConfig, row_store: RowStore, mailchimp: _FakeMailchimp) -> Any:
    components = PipelineComponents(
        discovery=None,  # type: ignore[arg-type]
        topic_search=None,  # type: ignore[arg-type]
        drafts=None,  # type: ignore[arg-type]
        delivery_scheduler=None,  # type: ignore[arg-type]
        action_network=None,  # type: ignore[arg-type]
        mailchimp=mailchimp,  # type: ignore[arg-type]
        orchestrator=None,  # type: ignore[arg-type]
    )
    task_store = TaskRunStore(app_config.task_state_db_path)
    task_store.initialize()
    return build_task_runtime(
        app_config, row_store=row_store, task_store=task_store, components=components
    )


def test_every_task_is_registered_with_a_retry_policy(
    app_config: AppConfig, row_store: RowStore
) -> None:
    runtime = _runtime(app_config, row_store, _FakeMailchimp())

    assert set(runtime.task_names) == {name.value for name in TaskName}
    assert set(RETRY_POLICIES) == set(TaskName)
    assert runtime.definition("send-to-mailchimp").retry.max_attempts == 3
    assert runtime.definition("discover-research").retry.max_attempts == 2


def test_valid_payload_reaches_the_component(app_config: AppConfig, row_store: RowStore) -> None:
    mailchimp = _FakeMailchimp()
    runtime = _runtime(app_config, row_store, mailchimp)

    record = runtime.run_inline(
        TaskName.SEND_TO_MAILCHIMP,
        {"draft_id": "draft-1", "user_id": "user-1", "schedule_time": None},
    )

    assert record.status == TaskStatus.COMPLETED
    assert record.result["provider_id"] == "camp-1"
    assert mailchimp.payloads == [SendDraftPayload(draft_id="draft-1", user_id="user-1")]


def test_malformed_payload_aborts_without_retry(
    app_config: AppConfig, row_store: RowStore
) -> None:
    mailchimp = _FakeMailchimp()
    runtime = _runtime(app_config, row_store, mailchimp)

    record = runtime.run_inline(TaskName.SEND_TO_MAILCHIMP, {"user_id": "user-1"})

    assert record.status == TaskStatus.ABORTED
    assert record.attempt == 1
    assert "Invalid task payload" in (record.last_error or "")
    assert mailchimp.payloads == []
