"""Per-model generation defaults.

``ModelSpec`` is a standalone Pydantic model describing one catalog entry:
its provider, default sampling parameters and capabilities.  Per-call
overrides win over catalog defaults:

    catalog defaults  →  per-call overrides (max_tokens, send_reasoning)
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

# Output tokens kept for the answer on top of an Anthropic thinking budget.
ANSWER_TOKENS = 4096


class ModelSpec(BaseModel):
    """Generation defaults for a single model.

    ``None`` means "use the provider's default".
    """

    name: str
    provider: Literal["openai", "anthropic", "google"]
    temperature: float | None = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, description="Max tokens to generate")
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    supports_sampling: bool = Field(
        default=True,
        description="False for models that reject temperature/top_p (gpt-5 family)",
    )
    supports_reasoning: bool = False

    def to_model_settings(
        self,
        *,
        max_tokens: int | None = None,
        send_reasoning: bool = False,
        reasoning_budget_tokens: int = 15000,
    ) -> dict[str, Any]:
        """Convert to pydantic-ai ``ModelSettings`` keyword arguments."""
        kw: dict[str, Any] = {}
        tokens = max_tokens or self.max_tokens
        if tokens is not None:
            kw["max_tokens"] = tokens
        if self.supports_sampling:
            if self.temperature is not None:
                kw["temperature"] = self.temperature
            if self.top_p is not None:
                kw["top_p"] = self.top_p
        if send_reasoning and self.supports_reasoning:
            kw.update(_reasoning_settings(self.provider, reasoning_budget_tokens))
            if self.provider == "anthropic":
                # Extended thinking: budget must stay below max_tokens, no custom sampling.
                kw.pop("temperature", None)
                kw.pop("top_p", None)
                kw["max_tokens"] = max(tokens or 0, reasoning_budget_tokens + ANSWER_TOKENS)
        return kw


def _reasoning_settings(provider: str, budget_tokens: int) -> dict[str, Any]:
    if provider == "anthropic":
        return {"anthropic_thinking": {"type": "enabled", "budget_tokens": budget_tokens}}
    if provider == "openai":
        return {"openai_reasoning_effort": "high"}
    if provider == "google":
        return {"google_thinking_config": {"include_thoughts": True}}
    return {}


MODEL_CATALOG: list[ModelSpec] = [
    # OpenAI
    ModelSpec(name="gpt-5-mini", provider="openai", max_tokens=128000,
              supports_sampling=False, supports_reasoning=True),
    ModelSpec(name="gpt-5", provider="openai", max_tokens=128000,
              supports_sampling=False, supports_reasoning=True),
    ModelSpec(name="gpt-4.1-nano", provider="openai", max_tokens=16384),
    ModelSpec(name="gpt-4o", provider="openai", max_tokens=4096),
    ModelSpec(name="gpt-4o-mini", provider="openai", max_tokens=16384),
    ModelSpec(name="o3-mini", provider="openai", supports_sampling=False,
              supports_reasoning=True),
    # Anthropic
    ModelSpec(name="claude-3-5-sonnet-20241022", provider="anthropic", max_tokens=8192),
    ModelSpec(name="claude-3-7-sonnet-20250219", provider="anthropic", max_tokens=8192,
              supports_reasoning=True),
    ModelSpec(name="claude-sonnet-4-20250514", provider="anthropic", max_tokens=8192,
              supports_reasoning=True),
    ModelSpec(name="claude-3-haiku-20240307", provider="anthropic", max_tokens=4096),
    # Google
    ModelSpec(name="gemini-1.5-pro", provider="google", max_tokens=8192),
    ModelSpec(name="gemini-1.5-flash", provider="google", max_tokens=8192),
    ModelSpec(name="gemini-2.5-pro", provider="google", max_tokens=8192,
              supports_reasoning=True),
]

_REASONING_MARKERS = ("gpt-5", "o1", "o3-mini", "claude-3-7", "claude-4", "claude-sonnet-4")


def get_model_spec(provider: str, model_name: str) -> ModelSpec:
    """Look up *model_name* in the catalog, or synthesize a permissive spec.

    Unknown models are allowed (providers ship new ones faster than the
    catalog is updated); capabilities are inferred from the name.
    """
    for spec in MODEL_CATALOG:
        if spec.name == model_name and spec.provider == provider:
            return spec
    reasoning = any(marker in model_name for marker in _REASONING_MARKERS)
    return ModelSpec(
        name=model_name,
        provider=provider,  # type: ignore[arg-type]
        supports_sampling=not model_name.startswith(("gpt-5", "o1", "o3")),
        supports_reasoning=reasoning,
    )


def list_model_specs(provider: str | None = None) -> list[ModelSpec]:
    if provider is None:
        return list(MODEL_CATALOG)
    return [spec for spec in MODEL_CATALOG if spec.provider == provider]
