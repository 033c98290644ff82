"""Stream event models emitted by the agent runtime.

Text and reasoning events carry the full text-so-far (``text``) as well as
the increment (``delta``), so a consumer that misses an event can still
render the correct state from the next one.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import Field

from models.agent import TokenUsage
from models.base import CamelModel
from models.errors import ErrorCode


class TextDeltaEvent(CamelModel):
    type: Literal["text-delta"] = "text-delta"
    text: str
    delta: str = ""


class ReasoningDeltaEvent(CamelModel):
    type: Literal["reasoning-delta"] = "reasoning-delta"
    text: str
    delta: str = ""


class ToolCallEvent(CamelModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultEvent(CamelModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any = None
    model_text: str = ""
    is_error: bool = False


class ToolApprovalRequestEvent(CamelModel):
    type: Literal["tool-approval-request"] = "tool-approval-request"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolApprovalResponseEvent(CamelModel):
    type: Literal["tool-approval-response"] = "tool-approval-response"
    tool_call_id: str
    approved: bool
    reason: str | None = None


class FinishEvent(CamelModel):
    type: Literal["finish"] = "finish"
    text: str = ""
    finish_reason: str = "stop"
    usage: TokenUsage | None = None
    steps: int = 0


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    code: ErrorCode
    message: str
    # partial text generated before the failure
    text: str = ""


StreamEvent = Annotated[
    Union[
        TextDeltaEvent,
        ReasoningDeltaEvent,
        ToolCallEvent,
        ToolResultEvent,
        ToolApprovalRequestEvent,
        ToolApprovalResponseEvent,
        FinishEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"finish", "error"})
