"""Data Stream Protocol encoder for the Vercel AI SDK UI Message Stream v1.

Encodes runtime :mod:`models.stream_events` into the Vercel AI SDK Data
Stream Protocol (SSE format), so any host can serve the assistant stream to
``useChat`` without further translation.

Each method returns one or more SSE lines: ``"data: {json}\\n\\n"``

Reference: https://ai-sdk.dev/docs/ai-sdk-ui/stream-protocol

Required response header: ``x-vercel-ai-ui-message-stream: v1``
Termination marker: ``data: [DONE]\\n\\n``
"""

from __future__ import annotations

import json
import uuid
from contextlib import aclosing
from typing import Any, AsyncIterator

from models.errors import format_error
from models.stream_events import (
    ErrorEvent,
    FinishEvent,
    ReasoningDeltaEvent,
    StreamEvent,
    TextDeltaEvent,
    ToolApprovalRequestEvent,
    ToolApprovalResponseEvent,
    ToolCallEvent,
    ToolResultEvent,
)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "x-vercel-ai-ui-message-stream": "v1",
}

DONE_LINE = "data: [DONE]\n\n"


class DataStreamEncoder:
    """Low-level protocol chunks.  Every method returns a ready-to-yield SSE string."""

    @staticmethod
    def _sse(payload: dict[str, Any]) -> str:
        return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex[:8]

    # ── Message Control ──────────────────────────────────────────

    def start(self, message_id: str | None = None) -> str:
        return self._sse({"type": "start", "messageId": message_id or self.new_id()})

    def finish(self, metadata: dict[str, Any] | None = None) -> str:
        payload: dict[str, Any] = {"type": "finish"}
        if metadata:
            payload["messageMetadata"] = metadata
        return self._sse(payload) + DONE_LINE

    def start_step(self) -> str:
        return self._sse({"type": "start-step"})

    def finish_step(self) -> str:
        return self._sse({"type": "finish-step"})

    # ── Blocks (text / reasoning) ────────────────────────────────

    def block_start(self, kind: str, block_id: str) -> str:
        return self._sse({"type": f"{kind}-start", "id": block_id})

    def block_delta(self, kind: str, block_id: str, delta: str) -> str:
        return self._sse({"type": f"{kind}-delta", "id": block_id, "delta": delta})

    def block_end(self, kind: str, block_id: str) -> str:
        return self._sse({"type": f"{kind}-end", "id": block_id})

    # ── Tool Calls ───────────────────────────────────────────────

    def tool_input(self, call_id: str, name: str, input_data: dict[str, Any]) -> str:
        return self._sse(
            {"type": "tool-input-start", "toolCallId": call_id, "toolName": name}
        ) + self._sse(
            {
                "type": "tool-input-available",
                "toolCallId": call_id,
                "toolName": name,
                "input": input_data,
            }
        )

    def tool_output_available(self, call_id: str, output: Any) -> str:
        return self._sse(
            {"type": "tool-output-available", "toolCallId": call_id, "output": output}
        )

    def tool_output_error(self, call_id: str, error_text: str) -> str:
        return self._sse(
            {"type": "tool-output-error", "toolCallId": call_id, "errorText": error_text}
        )

    def tool_approval_request(self, call_id: str) -> str:
        return self._sse(
            {"type": "tool-approval-request", "approvalId": call_id, "toolCallId": call_id}
        )

    # ── Custom Data ──────────────────────────────────────────────

    def data(self, name: str, payload: Any) -> str:
        return self._sse({"type": f"data-{name}", "data": payload})

    # ── Error ────────────────────────────────────────────────────

    def error(self, text: str) -> str:
        return self._sse({"type": "error", "errorText": text})


class StreamEventEncoder:
    """Stateful mapping from runtime events to protocol lines.

    Tracks the open text/reasoning block and step boundaries: a model step
    that follows tool results opens a new step.
    """

    def __init__(self, message_id: str | None = None, enc: DataStreamEncoder | None = None):
        self._enc = enc or DataStreamEncoder()
        self._message_id = message_id
        self._started = False
        self._open: tuple[str, str] | None = None  # (kind, block id)
        self._after_tools = False

    def _begin(self, lines: list[str]) -> None:
        if not self._started:
            self._started = True
            lines.append(self._enc.start(self._message_id))
            lines.append(self._enc.start_step())
        elif self._after_tools:
            self._after_tools = False
            lines.append(self._enc.finish_step())
            lines.append(self._enc.start_step())

    def _close_block(self, lines: list[str]) -> None:
        if self._open is not None:
            kind, block_id = self._open
            lines.append(self._enc.block_end(kind, block_id))
            self._open = None

    def _delta(self, kind: str, delta: str, lines: list[str]) -> None:
        if self._open is None or self._open[0] != kind:
            self._close_block(lines)
            self._open = (kind, f"{kind}-{self._enc.new_id()}")
            lines.append(self._enc.block_start(kind, self._open[1]))
        lines.append(self._enc.block_delta(kind, self._open[1], delta))

    def encode(self, event: StreamEvent) -> list[str]:
        lines: list[str] = []
        if isinstance(event, TextDeltaEvent):
            self._begin(lines)
            self._delta("text", event.delta, lines)
        elif isinstance(event, ReasoningDeltaEvent):
            self._begin(lines)
            self._delta("reasoning", event.delta, lines)
        elif isinstance(event, ToolCallEvent):
            self._begin(lines)
            self._close_block(lines)
            lines.append(self._enc.tool_input(event.tool_call_id, event.tool_name, event.input))
        elif isinstance(event, ToolApprovalRequestEvent):
            self._begin(lines)
            lines.append(self._enc.tool_approval_request(event.tool_call_id))
        elif isinstance(event, ToolApprovalResponseEvent):
            self._begin(lines)
            lines.append(self._enc.data(
                "tool-approval-response",
                event.model_dump(by_alias=True, exclude={"type"}),
            ))
        elif isinstance(event, ToolResultEvent):
            self._begin(lines)
            if event.is_error:
                lines.append(self._enc.tool_output_error(event.tool_call_id, event.model_text))
            else:
                lines.append(self._enc.tool_output_available(event.tool_call_id, event.output))
            self._after_tools = True
        elif isinstance(event, FinishEvent):
            self._begin_if_needed(lines)
            self._close_block(lines)
            lines.append(self._enc.finish_step())
            metadata: dict[str, Any] = {"finishReason": event.finish_reason, "steps": event.steps}
            if event.usage is not None:
                metadata["usage"] = event.usage.model_dump(by_alias=True)
            lines.append(self._enc.finish(metadata))
        elif isinstance(event, ErrorEvent):
            self._begin_if_needed(lines)
            self._close_block(lines)
            lines.append(self._enc.error(format_error(event.code, event.message)))
            lines.append(DONE_LINE)
        return lines

    def _begin_if_needed(self, lines: list[str]) -> None:
        if not self._started:
            self._begin(lines)


async def encode_sse(
    events: AsyncIterator[StreamEvent], message_id: str | None = None
) -> AsyncIterator[str]:
    """Encode an event stream into SSE lines."""
    encoder = StreamEventEncoder(message_id)
    async with aclosing(events) as source:
        async for event in source:
            for line in encoder.encode(event):
                yield line
