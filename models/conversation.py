"""Conversation models: persistence scope, messages, and message parts.

Messages are stored in UI-message form: each message keeps an ordered list of
typed parts (text, tool call, tool result, reasoning, approval request and
response) so a consuming surface can render tool output exactly as it was
produced, while the model is replayed only the compact text.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import Field

from models.base import CamelModel

MessageRole = Literal["user", "assistant", "system", "tool"]

DEFAULT_TITLE = "New conversation"
TITLE_MAX_CHARS = 60
PREVIEW_MAX_CHARS = 50


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_message_id(prefix: str = "msg") -> str:
    """Generate a message id, e.g. ``assistant-1718000000000-3f9a1c2b``."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def generate_conversation_id() -> str:
    """Generate a new server-side conversation ID."""
    return f"conv-{uuid.uuid4().hex[:12]}"


# ── Persistence scope ────────────────────────────────────────


class ConversationContext(CamelModel):
    """Identifies where a conversation lives.  Built per request, never stored."""

    tenant_id: str
    user_id: str
    school_id: str | None = None
    conversation_id: str | None = None


# ── Message parts ────────────────────────────────────────────


class TextPart(CamelModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallPart(CamelModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(CamelModel):
    """Result of a tool call.

    ``output`` is the raw structured output kept for rendering;
    ``model_text`` is the compact text the model actually saw.
    """

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any = None
    model_text: str = ""
    is_error: bool = False
    state: str = "output-available"


class ReasoningPart(CamelModel):
    type: Literal["reasoning"] = "reasoning"
    text: str


class ApprovalRequestPart(CamelModel):
    type: Literal["tool-approval-request"] = "tool-approval-request"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ApprovalResponsePart(CamelModel):
    type: Literal["tool-approval-response"] = "tool-approval-response"
    tool_call_id: str
    approved: bool
    reason: str | None = None


Part = Annotated[
    Union[
        TextPart,
        ToolCallPart,
        ToolResultPart,
        ReasoningPart,
        ApprovalRequestPart,
        ApprovalResponsePart,
    ],
    Field(discriminator="type"),
]


# ── Messages ─────────────────────────────────────────────────


class ToolCallRecord(CamelModel):
    """Flat tool-call summary kept alongside ``parts`` for legacy readers."""

    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)


class Message(CamelModel):
    """A single stored message."""

    id: str = Field(default_factory=generate_message_id)
    role: MessageRole
    content: str = ""
    parts: list[Part] = Field(default_factory=list)
    tool_calls: list[ToolCallRecord] | None = None
    reasoning: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    @classmethod
    def user(cls, text: str) -> Message:
        """Build a user message echoing *text* as a single text part."""
        return cls(
            id=generate_message_id("user"),
            role="user",
            content=text,
            parts=[TextPart(text=text)],
        )

    def text(self) -> str:
        """Return ``content`` or, when empty, the joined text parts."""
        if self.content:
            return self.content
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    def tool_call_parts(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    def tool_result_parts(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]


class Conversation(CamelModel):
    """A persisted conversation row."""

    id: str = Field(default_factory=generate_conversation_id)
    tenant_id: str
    user_id: str
    school_id: str | None = None
    title: str = DEFAULT_TITLE
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ConversationSummary(CamelModel):
    """One entry of a conversation list."""

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    last_message: str


def derive_title(messages: list[Message]) -> str | None:
    """Derive a title from the first user message, truncated to 60 chars."""
    first_user = next((m for m in messages if m.role == "user"), None)
    if first_user is None:
        return None
    content = first_user.text().strip()
    if not content:
        return None
    if len(content) > TITLE_MAX_CHARS:
        return content[: TITLE_MAX_CHARS - 3] + "..."
    return content


def preview(messages: list[Message]) -> str:
    """Short preview of the last message for conversation lists."""
    if not messages:
        return DEFAULT_TITLE
    content = messages[-1].text()
    if len(content) > PREVIEW_MAX_CHARS:
        return content[:PREVIEW_MAX_CHARS] + "..."
    return content
