"""Pydantic Settings: typed configuration with .env auto-loading."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    debug: bool = False
    log_level: str = "INFO"

    # ── Model providers ──────────────────────────────────────
    # A provider is available iff its API key is non-empty.
    default_provider: Literal["openai", "anthropic", "google"] = "openai"
    openai_api_key: str = ""
    openai_default_model: str = "gpt-5-mini"
    anthropic_api_key: str = ""
    anthropic_default_model: str = "claude-3-5-sonnet-20241022"
    google_api_key: str = ""
    google_default_model: str = "gemini-1.5-pro"

    # ── Agent runtime ────────────────────────────────────────
    agent_max_steps: int = 15  # stop condition: max model⇄tool round trips
    agent_timeout_s: float = 60.0  # wall-clock budget per run
    agent_max_retries: int = 3  # transient provider failures, per model call
    retry_backoff_s: float = 0.5  # base delay, doubled on every retry
    agent_max_tokens: int | None = None  # None = model catalog default
    reasoning_budget_tokens: int = 15000

    # ── Conversation memory ──────────────────────────────────
    conversation_store_type: str = "memory"  # "memory" or "redis"
    redis_url: str = ""  # e.g. redis://:password@host:6379/0
    history_max_messages: int = 1000  # stored cap, oldest dropped first
    history_load_limit: int = 30  # messages replayed to the model per turn

    # ── Knowledge retrieval ──────────────────────────────────
    rag_top_k_fast: int = 3
    rag_top_k_detailed: int = 6

    def provider_credentials(self) -> dict[str, tuple[str, str]]:
        """Map provider → (api_key, default_model)."""
        return {
            "openai": (self.openai_api_key, self.openai_default_model),
            "anthropic": (self.anthropic_api_key, self.anthropic_default_model),
            "google": (self.google_api_key, self.google_default_model),
        }


@lru_cache
def get_settings() -> Settings:
    """Singleton accessor for application settings."""
    return Settings()
