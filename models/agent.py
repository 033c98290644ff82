"""Agent call options and run results.

``AgentCallOptions`` is the per-invocation parameter bag (identity, operating
mode, feature toggles).  It is distinct from an agent's static
configuration and is re-validated on every call.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import Field, field_validator

from models.base import CamelModel
from models.conversation import ConversationContext
from models.errors import ErrorCode

ResponseMode = Literal["fast", "detailed"]
ProviderName = Literal["openai", "anthropic", "google"]


class AgentCallOptions(CamelModel):
    """Per-call options validated before the run starts."""

    tenant_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    school_id: str | None = None
    school_name: str | None = None
    school_slug: str | None = None
    conversation_id: str | None = None
    user_role: str | None = None
    user_name: str | None = None
    response_mode: ResponseMode = "fast"
    send_reasoning: bool = False
    provider: ProviderName | None = None
    model: str | None = None
    # tool_call_id → approved?  Supplied when resuming a suspended run.
    approvals: dict[str, bool] = Field(default_factory=dict)

    @field_validator("tenant_id", "user_id")
    @classmethod
    def _strip_identity(cls, value: str) -> str:
        value = value.strip()
        if not value or value.lower() in {"none", "null", "undefined"}:
            raise ValueError("identity fields must be non-empty")
        return value

    def conversation_context(self) -> ConversationContext:
        return ConversationContext(
            tenant_id=self.tenant_id,
            user_id=self.user_id,
            school_id=self.school_id,
            conversation_id=self.conversation_id,
        )


class RunState(str, Enum):
    """AgentRuntime state machine states."""

    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    TOOL_REQUESTED = "tool_requested"
    AWAITING_APPROVAL = "awaiting_approval"
    TOOL_EXECUTING = "tool_executing"
    FINISHED = "finished"
    FAILED = "failed"


class RunStatus(str, Enum):
    FINISHED = "finished"
    PENDING_APPROVAL = "pending_approval"
    FAILED = "failed"


class TokenUsage(CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class ErrorInfo(CamelModel):
    code: ErrorCode
    message: str


class PendingApproval(CamelModel):
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class AgentRunResult(CamelModel):
    """Outcome of ``AgentRuntime.generate``."""

    status: RunStatus
    text: str = ""
    # pydantic-ai transcript of this run (system + history + new turns)
    messages: list[Any] = Field(default_factory=list)
    usage: TokenUsage | None = None
    steps: int = 0
    finish_reason: str | None = None
    error: ErrorInfo | None = None
    pending_approvals: list[PendingApproval] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != RunStatus.FAILED
