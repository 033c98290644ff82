"""Model provider registry: resolves (provider, model) to a ready model handle.

Providers are tagged variants (``openai``, ``anthropic``, ``google``)
dispatched through a dict of builder closures, each producing a PydanticAI
model instance.  A provider is available iff its API key is configured.

Handles are cached per ``(provider, model)`` and never mutated after
construction, so they are safe to share across concurrent runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from pydantic_ai.models import Model
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

from config.llm_config import ModelSpec, get_model_spec, list_model_specs
from config.settings import Settings, get_settings
from errors.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

PROVIDERS: tuple[str, ...] = ("openai", "anthropic", "google")

ModelBuilder = Callable[[str, str], Model]
"""``(model_name, api_key) -> Model``"""


def _build_openai(model_name: str, api_key: str) -> Model:
    return OpenAIChatModel(model_name, provider=OpenAIProvider(api_key=api_key))


def _build_anthropic(model_name: str, api_key: str) -> Model:
    from pydantic_ai.models.anthropic import AnthropicModel
    from pydantic_ai.providers.anthropic import AnthropicProvider

    return AnthropicModel(model_name, provider=AnthropicProvider(api_key=api_key))


def _build_google(model_name: str, api_key: str) -> Model:
    from pydantic_ai.models.google import GoogleModel
    from pydantic_ai.providers.google import GoogleProvider

    return GoogleModel(model_name, provider=GoogleProvider(api_key=api_key))


DEFAULT_BUILDERS: dict[str, ModelBuilder] = {
    "openai": _build_openai,
    "anthropic": _build_anthropic,
    "google": _build_google,
}


@dataclass(frozen=True)
class ModelHandle:
    """A resolved, ready-to-call model."""

    provider: str
    model_name: str
    model: Model
    spec: ModelSpec
    reasoning_budget_tokens: int = 15000

    def model_settings(
        self, *, max_tokens: int | None = None, send_reasoning: bool = False
    ) -> dict[str, Any]:
        return self.spec.to_model_settings(
            max_tokens=max_tokens,
            send_reasoning=send_reasoning,
            reasoning_budget_tokens=self.reasoning_budget_tokens,
        )


@dataclass(frozen=True)
class ProviderUnavailable:
    """Resolution failure; never raised, returned so callers can branch on it."""

    provider: str
    reason: Literal["missing_credentials", "no_model"]
    model_name: str | None = None

    @property
    def message(self) -> str:
        if self.reason == "no_model":
            return f"No model specified for provider '{self.provider}'"
        return f"Model provider '{self.provider}' is not available (missing credentials)"


@dataclass
class _ProviderConfig:
    api_key: str
    default_model: str


@dataclass
class ModelProviderRegistry:
    """Resolve provider/model names to :class:`ModelHandle` instances."""

    settings: Settings = field(default_factory=get_settings)
    builders: dict[str, ModelBuilder] = field(default_factory=lambda: dict(DEFAULT_BUILDERS))

    def __post_init__(self) -> None:
        self._configs: dict[str, _ProviderConfig] = {
            name: _ProviderConfig(api_key=key or "", default_model=default or "")
            for name, (key, default) in self.settings.provider_credentials().items()
        }
        self._cache: dict[tuple[str, str], ModelHandle] = {}

    # ── Availability ────────────────────────────────────────

    def _config(self, provider: str) -> _ProviderConfig:
        config = self._configs.get(provider)
        if config is None or provider not in self.builders:
            raise ValueError(
                f"Unknown model provider '{provider}'. Expected one of: {', '.join(PROVIDERS)}"
            )
        return config

    def is_available(self, provider: str) -> bool:
        return bool(self._config(provider).api_key.strip())

    def available_providers(self) -> list[str]:
        return [name for name in PROVIDERS if self.is_available(name)]

    def list_models(self, provider: str | None = None) -> list[ModelSpec]:
        """Catalog entries for *provider*, or for every available provider."""
        if provider is not None:
            self._config(provider)
            return list_model_specs(provider)
        specs: list[ModelSpec] = []
        for name in self.available_providers():
            specs.extend(list_model_specs(name))
        return specs

    # ── Resolution ──────────────────────────────────────────

    def resolve(
        self, provider: str | None = None, model_name: str | None = None
    ) -> ModelHandle | ProviderUnavailable:
        """Resolve to a handle, or a :class:`ProviderUnavailable` value.

        Raises:
            ValueError: *provider* is not a known provider key.
        """
        provider = provider or self.settings.default_provider
        config = self._config(provider)

        if not config.api_key.strip():
            logger.warning("Provider %s unavailable: missing credentials", provider)
            return ProviderUnavailable(provider=provider, reason="missing_credentials",
                                       model_name=model_name)

        name = (model_name or config.default_model).strip()
        if not name:
            return ProviderUnavailable(provider=provider, reason="no_model")

        key = (provider, name)
        handle = self._cache.get(key)
        if handle is None:
            handle = ModelHandle(
                provider=provider,
                model_name=name,
                model=self.builders[provider](name, config.api_key),
                spec=get_model_spec(provider, name),
                reasoning_budget_tokens=self.settings.reasoning_budget_tokens,
            )
            self._cache[key] = handle
            logger.info("Model handle created: %s/%s", provider, name)
        return handle

    def require(self, provider: str | None = None, model_name: str | None = None) -> ModelHandle:
        """Like :meth:`resolve` but raise ``ConfigurationError`` when unavailable."""
        try:
            resolved = self.resolve(provider, model_name)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        if isinstance(resolved, ProviderUnavailable):
            raise ConfigurationError(resolved.message)
        return resolved
