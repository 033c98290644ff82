"""Shared pytest fixtures for the assistant core tests.

Provides:
- ``settings``: Settings with an OpenAI key, zero retry backoff, short timeout
- ``metrics``: fresh MetricsCollector per test
- ``gateway``: empty ToolExecutionGateway recording into ``metrics``
- ``document_store`` / ``memory``: in-memory conversation storage
- ``tool_context`` / ``call_options``: a tenant-scoped caller
- ``make_runtime``: builds an AgentRuntime whose providers all return a given model
"""

from __future__ import annotations

from typing import Any, Callable

import pytest
from pydantic import BaseModel

from agents.provider import PROVIDERS, ModelProviderRegistry
from agents.runtime import AgentDefinition, AgentRuntime
from config.settings import Settings
from models.agent import AgentCallOptions
from services.conversation_store import ConversationMemoryStore, InMemoryDocumentStore
from services.metrics import MetricsCollector
from tools.registry import ToolContext, ToolDefinition, ToolExecutionGateway


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "openai_api_key": "sk-test",
        "openai_default_model": "gpt-4o-mini",
        "anthropic_api_key": "",
        "google_api_key": "",
        "default_provider": "openai",
        "retry_backoff_s": 0.0,
        "agent_timeout_s": 5.0,
        "conversation_store_type": "memory",
        "redis_url": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def builders_for(model: Any) -> dict[str, Callable]:
    """Builders that hand out *model* for every provider."""
    return {name: (lambda _name, _key: model) for name in PROVIDERS}


class EchoInput(BaseModel):
    text: str


def echo_tool(**overrides: Any) -> ToolDefinition:
    """A tool that returns its input text upper-cased."""
    values: dict[str, Any] = {
        "name": "echo",
        "description": "Echo text back in upper case",
        "input_model": EchoInput,
        "execute": lambda data, ctx: {"echo": data.text.upper(), "tenant": ctx.tenant_id},
        "output_formatter": lambda data, output: output["echo"],
    }
    values.update(overrides)
    return ToolDefinition(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Fresh metrics collector, isolated per test."""
    return MetricsCollector()


@pytest.fixture
def gateway(metrics: MetricsCollector) -> ToolExecutionGateway:
    return ToolExecutionGateway(metrics=metrics)


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def memory(document_store: InMemoryDocumentStore) -> ConversationMemoryStore:
    return ConversationMemoryStore(document_store)


@pytest.fixture
def tool_context() -> ToolContext:
    return ToolContext(
        tenant_id="tenant-1", user_id="user-1", school_id="school-1", run_id="run-test"
    )


@pytest.fixture
def call_options() -> AgentCallOptions:
    return AgentCallOptions(
        tenant_id="tenant-1",
        user_id="user-1",
        school_id="school-1",
        user_name="Ana",
        user_role="teacher",
    )


@pytest.fixture
def make_runtime(gateway: ToolExecutionGateway, metrics: MetricsCollector):
    """Factory: ``make_runtime(model, memory=None, tool_names=None, max_steps=None, **settings)``."""

    def _make(
        model: Any,
        *,
        memory: ConversationMemoryStore | None = None,
        tool_names: list[str] | None = None,
        max_steps: int | None = None,
        **setting_overrides: Any,
    ) -> AgentRuntime:
        settings = make_settings(**setting_overrides)
        providers = ModelProviderRegistry(settings=settings, builders=builders_for(model))
        definition = AgentDefinition(name="assistant", tool_names=tool_names, max_steps=max_steps)
        return AgentRuntime(
            definition,
            providers=providers,
            gateway=gateway,
            memory=memory,
            settings=settings,
            metrics=metrics,
        )

    return _make
