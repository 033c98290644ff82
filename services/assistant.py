"""AssistantService: the single entry point a host application talks to.

Wraps the agent registry, one :class:`StreamingPipeline` per agent, the
workflow service and the conversation memory store.  Hosts (HTTP routes,
workers, tests) call these methods and never reach into the components.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Protocol

from agents.registry import AgentRegistry
from agents.runtime import coerce_options
from agents.workflows import WorkflowService
from models.agent import AgentCallOptions, AgentRunResult
from models.base import CamelModel
from models.conversation import ConversationSummary, Message
from models.stream_events import StreamEvent
from models.workflow import WorkflowContext, WorkflowResult
from services.conversation_store import ConversationMemoryStore, RedisDocumentStore
from services.stream_adapter import StreamingPipeline

logger = logging.getLogger(__name__)

DEFAULT_AGENT = "assistant"


class Identity(CamelModel):
    """Resolved caller identity."""

    tenant_id: str
    user_id: str
    role: str | None = None
    school_id: str | None = None


class IdentityResolver(Protocol):
    """Turns whatever the host authenticated (token claims, session) into an Identity."""

    async def resolve(self, identity: Any) -> Identity: ...


class AssistantService:
    """Facade over agents, streaming, workflows and conversation history."""

    def __init__(
        self,
        agents: AgentRegistry,
        memory: ConversationMemoryStore,
        workflows: WorkflowService,
        identity_resolver: IdentityResolver | None = None,
        default_agent: str = DEFAULT_AGENT,
    ):
        self.agents = agents
        self.memory = memory
        self.workflows = workflows
        self._identity_resolver = identity_resolver
        self._default_agent = default_agent
        self._pipelines: dict[str, StreamingPipeline] = {}

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self) -> None:
        documents = self.memory.documents
        if isinstance(documents, RedisDocumentStore):
            if await documents.ping():
                logger.info("Redis connection verified")
            else:
                logger.warning("Redis connection failed, conversations may not persist")
        logger.info("Assistant service started (agents=%s)", self.agents.list_names())

    async def close(self) -> None:
        """Wait for pending transcript writes, then release the store."""
        await asyncio.gather(*(p.drain() for p in self._pipelines.values()))
        await self.memory.documents.close()
        logger.info("Assistant service closed")

    # ── Agents ──────────────────────────────────────────────

    def pipeline(self, agent: str | None = None) -> StreamingPipeline:
        name = agent or self._default_agent
        pipeline = self._pipelines.get(name)
        if pipeline is None:
            pipeline = StreamingPipeline(self.agents.require(name), self.memory)
            self._pipelines[name] = pipeline
        return pipeline

    async def resolve_options(
        self, options: AgentCallOptions | dict[str, Any], identity: Any = None
    ) -> AgentCallOptions:
        """Validate *options* and overlay the resolved identity, if any.

        Raises:
            ConfigurationError: options are invalid.
        """
        if identity is not None and self._identity_resolver is not None:
            resolved = await self._identity_resolver.resolve(identity)
            raw = options.model_dump() if isinstance(options, AgentCallOptions) else dict(options)
            raw.update(
                tenant_id=resolved.tenant_id,
                user_id=resolved.user_id,
                user_role=resolved.role or raw.get("user_role"),
                school_id=resolved.school_id or raw.get("school_id"),
            )
            options = raw
        return coerce_options(options)

    async def generate(
        self,
        prompt: str,
        options: AgentCallOptions | dict[str, Any],
        *,
        agent: str | None = None,
        identity: Any = None,
    ) -> AgentRunResult:
        pipeline = self.pipeline(agent)
        resolved = await self.resolve_options(options, identity)
        return await pipeline.generate(prompt, resolved)

    async def stream(
        self,
        prompt: str,
        options: AgentCallOptions | dict[str, Any],
        *,
        agent: str | None = None,
        identity: Any = None,
    ) -> AsyncIterator[StreamEvent]:
        pipeline = self.pipeline(agent)
        resolved = await self.resolve_options(options, identity)
        async with aclosing(pipeline.stream(prompt, resolved)) as events:
            async for event in events:
                yield event

    async def stream_sse(
        self,
        prompt: str,
        options: AgentCallOptions | dict[str, Any],
        *,
        agent: str | None = None,
        identity: Any = None,
    ) -> AsyncIterator[str]:
        pipeline = self.pipeline(agent)
        resolved = await self.resolve_options(options, identity)
        async with aclosing(pipeline.stream_sse(prompt, resolved)) as lines:
            async for line in lines:
                yield line

    # ── Workflows ───────────────────────────────────────────

    async def run_workflow(self, workflow_id: str, context: WorkflowContext) -> WorkflowResult:
        return await self.workflows.run_workflow(workflow_id, context)

    # ── Conversations ───────────────────────────────────────

    async def list_conversations(
        self, tenant_id: str, user_id: str, limit: int = 20
    ) -> list[ConversationSummary]:
        return await self.memory.list_conversations(tenant_id, user_id, limit)

    async def get_history(
        self, tenant_id: str, user_id: str, conversation_id: str
    ) -> list[Message] | None:
        return await self.memory.get_history(tenant_id, user_id, conversation_id)

    async def delete_conversation(self, tenant_id: str, user_id: str, conversation_id: str) -> bool:
        return await self.memory.delete_conversation(tenant_id, user_id, conversation_id)
