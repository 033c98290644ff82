"""Agent registry: named runtimes sharing one provider registry and gateway.

Populated at start-up by the service container and read-only afterwards.
"""

from __future__ import annotations

import logging

from agents.provider import ModelProviderRegistry
from agents.runtime import AgentDefinition, AgentRuntime
from config.settings import Settings
from errors.exceptions import ConfigurationError
from services.conversation_store import ConversationMemoryStore
from tools.registry import ToolExecutionGateway

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Build and look up :class:`AgentRuntime` instances by name."""

    def __init__(
        self,
        providers: ModelProviderRegistry,
        gateway: ToolExecutionGateway,
        memory: ConversationMemoryStore | None = None,
        settings: Settings | None = None,
    ):
        self._providers = providers
        self._gateway = gateway
        self._memory = memory
        self._settings = settings
        self._agents: dict[str, AgentRuntime] = {}

    def register(self, definition: AgentDefinition) -> AgentRuntime:
        if definition.name in self._agents:
            logger.warning("Agent %s already registered, overwriting", definition.name)
        runtime = AgentRuntime(
            definition,
            providers=self._providers,
            gateway=self._gateway,
            memory=self._memory,
            settings=self._settings,
        )
        self._agents[definition.name] = runtime
        logger.info("Registered agent %s (tools=%s)", definition.name, definition.tool_names or "all")
        return runtime

    def unregister(self, name: str) -> bool:
        return self._agents.pop(name, None) is not None

    def get(self, name: str) -> AgentRuntime | None:
        return self._agents.get(name)

    def require(self, name: str) -> AgentRuntime:
        runtime = self._agents.get(name)
        if runtime is None:
            raise ConfigurationError(f"Agent '{name}' is not registered")
        return runtime

    def has(self, name: str) -> bool:
        return name in self._agents

    def list_names(self) -> list[str]:
        return list(self._agents.keys())

    def all(self) -> list[AgentRuntime]:
        return list(self._agents.values())
