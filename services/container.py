"""Service wiring: builds the component graph from :class:`Settings`.

Registries are populated here, once, and treated as read-only afterwards.
"""

from __future__ import annotations

import logging
from typing import Callable

from agents.provider import DEFAULT_BUILDERS, ModelProviderRegistry
from agents.registry import AgentRegistry
from agents.runtime import AgentDefinition
from agents.workflows import StepExecutor, WorkflowOrchestrator, WorkflowService
from config.settings import Settings, get_settings
from services.assistant import DEFAULT_AGENT, AssistantService, IdentityResolver
from services.conversation_store import ConversationMemoryStore, DocumentStore, create_document_store
from tools import default_tools
from tools.database import QueryExecutor
from tools.knowledge import Retriever
from tools.registry import ToolExecutionGateway

logger = logging.getLogger(__name__)

ASSISTANT_AGENT = AgentDefinition(
    name=DEFAULT_AGENT,
    description="School management assistant with knowledge-base and data lookups",
)


def configure_logging(settings: Settings) -> None:
    """Root logging setup; a no-op when the host already configured handlers."""
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_assistant_service(
    settings: Settings | None = None,
    *,
    retriever: Retriever | None = None,
    query_executor: QueryExecutor | None = None,
    identity_resolver: IdentityResolver | None = None,
    documents: DocumentStore | None = None,
    builders: dict[str, Callable] | None = None,
    agents: list[AgentDefinition] | None = None,
) -> AssistantService:
    """Wire every component and return the facade.

    ``documents`` and ``builders`` override the store and model builders
    picked from settings (tests pass an in-memory store and scripted models).
    """
    settings = settings or get_settings()
    configure_logging(settings)

    documents = documents or create_document_store(
        settings.conversation_store_type, settings.redis_url
    )
    memory = ConversationMemoryStore(documents, max_messages=settings.history_max_messages)

    providers = ModelProviderRegistry(settings=settings, builders=dict(builders or DEFAULT_BUILDERS))
    logger.info("Available model providers: %s", providers.available_providers())

    gateway = ToolExecutionGateway()
    gateway.register_many(default_tools(
        retriever=retriever,
        query_executor=query_executor,
        top_k_by_mode={"fast": settings.rag_top_k_fast, "detailed": settings.rag_top_k_detailed},
    ))

    registry = AgentRegistry(providers, gateway, memory=memory, settings=settings)
    for definition in agents or [ASSISTANT_AGENT]:
        registry.register(definition)

    workflows = WorkflowService(WorkflowOrchestrator(StepExecutor(registry, gateway)))
    return AssistantService(
        registry,
        memory,
        workflows,
        identity_resolver=identity_resolver,
        default_agent=registry.list_names()[0],
    )
