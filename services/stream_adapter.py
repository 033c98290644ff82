"""Streaming pipeline: relays runtime events and persists the transcript.

Events are passed to the caller exactly in arrival order.  In parallel a
:class:`TranscriptAccumulator` folds them into one user message and one
assistant message.  When the stream ends (finish, error, disconnect or
cancellation) a detached task appends the transcript to conversation memory.
Failures of that task are logged and never reach the caller's stream.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Protocol

from errors.exceptions import PersistenceError
from models.agent import AgentCallOptions, AgentRunResult
from models.conversation import (
    ApprovalRequestPart,
    ApprovalResponsePart,
    ConversationContext,
    Message,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolCallRecord,
    ToolResultPart,
    generate_message_id,
)
from models.stream_events import (
    TERMINAL_EVENT_TYPES,
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
from services.conversation_store import ConversationMemoryStore
from services.datastream import encode_sse

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    """What the pipeline needs from an agent runtime."""

    def stream(self, prompt: str, options: AgentCallOptions) -> AsyncIterator[StreamEvent]: ...

    async def generate(self, prompt: str, options: AgentCallOptions, on_event: Any = None) -> AgentRunResult: ...


class TranscriptAccumulator:
    """Fold stream events into the messages of one turn.

    Text and reasoning are kept as ordered parts: consecutive deltas extend
    the current part, anything in between (a tool call) starts a new one.
    """

    def __init__(self, prompt: str):
        self.prompt = prompt
        self.parts: list[Any] = []
        self.text = ""
        self.reasoning = ""
        self.finish_reason: str | None = None
        self.error: ErrorEvent | None = None
        self.completed = False

    def add(self, event: StreamEvent) -> None:
        if event.type in TERMINAL_EVENT_TYPES:
            self.completed = True
        if isinstance(event, TextDeltaEvent):
            self.text = event.text
            self._extend(TextPart, event.delta)
        elif isinstance(event, ReasoningDeltaEvent):
            self.reasoning = event.text
            self._extend(ReasoningPart, event.delta)
        elif isinstance(event, ToolCallEvent):
            self.parts.append(ToolCallPart(
                tool_call_id=event.tool_call_id, tool_name=event.tool_name, input=event.input
            ))
        elif isinstance(event, ToolApprovalRequestEvent):
            self.parts.append(ApprovalRequestPart(
                tool_call_id=event.tool_call_id, tool_name=event.tool_name, input=event.input
            ))
        elif isinstance(event, ToolApprovalResponseEvent):
            self.parts.append(ApprovalResponsePart(
                tool_call_id=event.tool_call_id, approved=event.approved, reason=event.reason
            ))
        elif isinstance(event, ToolResultEvent):
            self.parts.append(ToolResultPart(
                tool_call_id=event.tool_call_id,
                tool_name=event.tool_name,
                output=event.output,
                model_text=event.model_text,
                is_error=event.is_error,
                state="output-error" if event.is_error else "output-available",
            ))
        elif isinstance(event, FinishEvent):
            self.text = event.text or self.text
            self.finish_reason = event.finish_reason
        elif isinstance(event, ErrorEvent):
            self.text = event.text or self.text
            self.error = event
            self.finish_reason = "error"

    def _extend(self, part_type: type, delta: str) -> None:
        if self.parts and isinstance(self.parts[-1], part_type):
            self.parts[-1].text += delta
        else:
            self.parts.append(part_type(text=delta))

    def messages(self) -> list[Message]:
        """One user message echoing the turn plus one assistant message, if any."""
        messages: list[Message] = []
        if self.prompt:
            messages.append(Message.user(self.prompt))
        if self.parts or self.text:
            tool_calls = [
                ToolCallRecord(tool_call_id=p.tool_call_id, tool_name=p.tool_name, args=p.input)
                for p in self.parts if isinstance(p, ToolCallPart)
            ]
            parts = list(self.parts) or [TextPart(text=self.text)]
            messages.append(Message(
                id=generate_message_id("assistant"),
                role="assistant",
                content=self.text,
                parts=parts,
                tool_calls=tool_calls or None,
                reasoning=self.reasoning or None,
            ))
        return messages


class StreamingPipeline:
    """Relay a runtime's events and persist each turn in the background."""

    def __init__(self, runtime: EventSource, memory: ConversationMemoryStore | None = None):
        self._runtime = runtime
        self._memory = memory
        self._tasks: set[asyncio.Task] = set()

    @property
    def runtime(self) -> EventSource:
        return self._runtime

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def _bind_conversation(
        self, options: AgentCallOptions
    ) -> tuple[AgentCallOptions, ConversationContext | None]:
        if self._memory is None:
            return options, None
        context = options.conversation_context()
        try:
            conversation_id = await self._memory.get_or_create(context)
        except PersistenceError:
            logger.warning("Conversation unavailable, turn will not be persisted", exc_info=True)
            return options, None
        options = options.model_copy(update={"conversation_id": conversation_id})
        return options, context.model_copy(update={"conversation_id": conversation_id})

    async def stream(self, prompt: str, options: AgentCallOptions) -> AsyncIterator[StreamEvent]:
        """Yield runtime events unchanged; persist the turn after the stream ends."""
        options, context = await self._bind_conversation(options)
        transcript = TranscriptAccumulator(prompt)
        try:
            async with aclosing(self._runtime.stream(prompt, options)) as events:
                async for event in events:
                    transcript.add(event)
                    yield event
        finally:
            if context is not None:
                if not transcript.completed:
                    logger.info(
                        "Stream for conversation %s ended early, persisting partial turn",
                        context.conversation_id,
                    )
                self._schedule_persist(context, transcript)

    async def stream_sse(self, prompt: str, options: AgentCallOptions) -> AsyncIterator[str]:
        """:meth:`stream` encoded as Data Stream Protocol SSE lines."""
        async with aclosing(encode_sse(self.stream(prompt, options))) as lines:
            async for line in lines:
                yield line

    async def generate(self, prompt: str, options: AgentCallOptions) -> AgentRunResult:
        """Run to completion, then persist the turn in the background."""
        options, context = await self._bind_conversation(options)
        transcript = TranscriptAccumulator(prompt)
        try:
            return await self._runtime.generate(prompt, options, on_event=transcript.add)
        finally:
            if context is not None:
                self._schedule_persist(context, transcript)

    def _schedule_persist(self, context: ConversationContext, transcript: TranscriptAccumulator) -> None:
        messages = transcript.messages()
        if not messages:
            return
        task = asyncio.create_task(self._persist(context, messages))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _persist(self, context: ConversationContext, messages: list[Message]) -> None:
        try:
            await self._memory.append(context, messages)
        except Exception:
            logger.exception(
                "Failed to persist %d message(s) to conversation %s",
                len(messages), context.conversation_id,
            )

    async def drain(self) -> None:
        """Wait for every in-flight persistence task (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
