"""Named task definitions binding trigger payloads to pipeline components."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from config import AppConfig
from models import (
    GenerateDraftsPayload,
    RapidDraftPayload,
    SendDraftPayload,
    TaskName,
    TopicSearchPayload,
)
from pipeline.action_network import build_action_network_client
from pipeline.action_network_pipeline import ActionNetworkDelivery
from pipeline.context_retrieval import ContextIndexer, ContextRetriever
from pipeline.delivery_scheduler import DeliveryScheduler
from pipeline.draft_generation import DraftGenerationEngine
from pipeline.failures import PermanentTaskError
from pipeline.llm import build_openai_client
from pipeline.mailchimp import build_mailchimp_client
from pipeline.mailchimp_pipeline import MailchimpDelivery
from pipeline.observability import StructuredLogger, get_logger
from pipeline.orchestrator import WeeklyDropOrchestrator
from pipeline.repository import PipelineRepository
from pipeline.research_discovery import ResearchDiscoveryEngine
from pipeline.resilience import RetryPolicy
from pipeline.row_store import RowStore
from pipeline.run_state import TaskRunStore
from pipeline.search_providers import build_discovery_provider, build_topic_search_provider
from pipeline.task_runtime import TaskContext, TaskDefinition, TaskRuntime
from pipeline.topic_search import TopicSearchService
from pipeline.vocabulary import load_vocabulary
from pipeline.writer import DraftWriter

P = TypeVar("P")

RETRY_POLICIES: dict[TaskName, RetryPolicy] = {
    TaskName.DISCOVER_RESEARCH: RetryPolicy(
        max_attempts=2, factor=1.5, min_timeout_seconds=5, max_timeout_seconds=30
    ),
    TaskName.RESEARCH_TOPICS: RetryPolicy(
        max_attempts=2, factor=1.5, min_timeout_seconds=2, max_timeout_seconds=15
    ),
    TaskName.GENERATE_USER_DRAFTS: RetryPolicy(
        max_attempts=3, factor=1.8, min_timeout_seconds=2, max_timeout_seconds=30
    ),
    TaskName.GENERATE_RAPID_DRAFT: RetryPolicy(
        max_attempts=2, factor=1.5, min_timeout_seconds=1, max_timeout_seconds=15
    ),
    TaskName.SCHEDULE_EMAIL_DELIVERIES: RetryPolicy(
        max_attempts=2, factor=1.5, min_timeout_seconds=2, max_timeout_seconds=15
    ),
    TaskName.SEND_TO_ACTION_NETWORK: RetryPolicy(
        max_attempts=3, factor=1.8, min_timeout_seconds=3, max_timeout_seconds=30
    ),
    TaskName.SEND_TO_MAILCHIMP: RetryPolicy(
        max_attempts=3, factor=2.0, min_timeout_seconds=3, max_timeout_seconds=30
    ),
    TaskName.WEEKLY_DRAFT_DROP: RetryPolicy(max_attempts=2),
}


@dataclass(frozen=True)
class PipelineComponents:
    """Everything the task handlers call into, built once per process."""

    discovery: ResearchDiscoveryEngine
    topic_search: TopicSearchService
    drafts: DraftGenerationEngine
    delivery_scheduler: DeliveryScheduler
    action_network: ActionNetworkDelivery
    mailchimp: MailchimpDelivery
    orchestrator: WeeklyDropOrchestrator


def build_components(
    config: AppConfig,
    repository: PipelineRepository,
    *,
    logger: StructuredLogger | None = None,
) -> PipelineComponents:
    """Wire production clients (OpenAI, search providers, ESP factories)."""
    logger = logger or get_logger()
    vocabulary = load_vocabulary(config.research_vocabulary_path)
    openai_client = build_openai_client(config)
    indexer = ContextIndexer(repository=repository, embedder=openai_client, logger=logger)
    retriever = ContextRetriever(repository=repository, embedder=openai_client, logger=logger)

    return PipelineComponents(
        discovery=ResearchDiscoveryEngine(
            repository=repository,
            provider=build_discovery_provider(config),
            vocabulary=vocabulary,
            indexer=indexer,
            logger=logger,
        ),
        topic_search=TopicSearchService(
            repository=repository,
            provider=build_topic_search_provider(config),
            vocabulary=vocabulary,
            indexer=indexer,
            logger=logger,
        ),
        drafts=DraftGenerationEngine(
            repository=repository,
            writer=DraftWriter(config, openai_client),
            retriever=retriever,
            indexer=indexer,
            logger=logger,
        ),
        delivery_scheduler=DeliveryScheduler(config=config, repository=repository, logger=logger),
        action_network=ActionNetworkDelivery(
            config=config,
            repository=repository,
            client_factory=lambda integration: build_action_network_client(config, integration),
            logger=logger,
        ),
        mailchimp=MailchimpDelivery(
            config=config,
            repository=repository,
            client_factory=lambda integration: build_mailchimp_client(config, integration),
            logger=logger,
        ),
        orchestrator=WeeklyDropOrchestrator(repository=repository, logger=logger),
    )


def _parse_payload(parser: Callable[[dict[str, Any]], P], payload: dict[str, Any]) -> P:
    try:
        return parser(payload)
    except (KeyError, TypeError, ValueError) as exc:
        raise PermanentTaskError(f"Invalid task payload: {exc!r}") from exc


def task_definitions(components: PipelineComponents) -> list[TaskDefinition]:
    def discover_research(ctx: TaskContext, payload: dict[str, Any]) -> dict[str, Any]:
        return components.discovery.run_all(ctx)

    def research_topics(ctx: TaskContext, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = _parse_payload(TopicSearchPayload.from_dict, payload)
        return components.topic_search.run(ctx, parsed)

    def generate_user_drafts(ctx: TaskContext, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = _parse_payload(GenerateDraftsPayload.from_dict, payload)
        return components.drafts.generate_user_drafts(ctx, parsed).to_dict()

    def generate_rapid_draft(ctx: TaskContext, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = _parse_payload(RapidDraftPayload.from_dict, payload)
        return components.drafts.generate_rapid_draft(ctx, parsed)

    def schedule_email_deliveries(ctx: TaskContext, payload: dict[str, Any]) -> dict[str, Any]:
        user_id = _parse_payload(lambda raw: str(raw["user_id"]), payload)
        return components.delivery_scheduler.schedule_user_deliveries(ctx, user_id)

    def send_to_action_network(ctx: TaskContext, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = _parse_payload(SendDraftPayload.from_dict, payload)
        return components.action_network.run(ctx, parsed).to_dict()

    def send_to_mailchimp(ctx: TaskContext, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = _parse_payload(SendDraftPayload.from_dict, payload)
        return components.mailchimp.run(ctx, parsed).to_dict()

    def weekly_draft_drop(ctx: TaskContext, payload: dict[str, Any]) -> dict[str, Any]:
        return components.orchestrator.run(ctx).to_dict()

    handlers = {
        TaskName.DISCOVER_RESEARCH: discover_research,
        TaskName.RESEARCH_TOPICS: research_topics,
        TaskName.GENERATE_USER_DRAFTS: generate_user_drafts,
        TaskName.GENERATE_RAPID_DRAFT: generate_rapid_draft,
        TaskName.SCHEDULE_EMAIL_DELIVERIES: schedule_email_deliveries,
        TaskName.SEND_TO_ACTION_NETWORK: send_to_action_network,
        TaskName.SEND_TO_MAILCHIMP: send_to_mailchimp,
        TaskName.WEEKLY_DRAFT_DROP: weekly_draft_drop,
    }
    return [
        TaskDefinition(name=name.value, handler=handler, retry=RETRY_POLICIES[name])
        for name, handler in handlers.items()
    ]


def build_task_runtime(
    config: AppConfig,
    *,
    row_store: RowStore,
    task_store: TaskRunStore,
    components: PipelineComponents | None = None,
    logger: StructuredLogger | None = None,
) -> TaskRuntime:
    """Task runtime with every pipeline task registered."""
    logger = logger or get_logger()
    if components is None:
        components = build_components(config, PipelineRepository(row_store), logger=logger)
    runtime = TaskRuntime(config=config, store=task_store, logger=logger)
    for definition in task_definitions(components):
        runtime.register(definition)
    return runtime
