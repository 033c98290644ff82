"""AgentRuntime tests with scripted models.

Uses PydanticAI's FunctionModel to script each model step, so the loop,
the approval gate, retries and usage accounting run for real without an
LLM.  Verifies:
1. Tool calls execute concurrently and results keep request order
2. Tool failures become model-visible errors, never run failures
3. Gated tools suspend the whole step; a later call resumes it
4. Transient provider errors are retried, then fail the run
5. Step limit, timeout and configuration failures
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from pydantic_ai.exceptions import ModelHTTPError
from pydantic_ai.messages import (
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    ThinkingPart,
    ToolCallPart,
    ToolReturnPart,
)
from pydantic_ai.models import Model
from pydantic_ai.models.function import AgentInfo, DeltaToolCall, FunctionModel
from pydantic_ai.usage import RequestUsage

from agents.runtime import find_pending_calls, is_transient_error
from errors.exceptions import ConfigurationError, TransientProviderError
from models.agent import AgentCallOptions, RunStatus
from models.conversation import ApprovalRequestPart, ConversationContext, Message
from models.conversation import ToolCallPart as StoredToolCall
from models.conversation import ToolResultPart as StoredToolResult
from models.errors import ErrorCode
from tools.registry import DENIED_MESSAGE, always_approve

from conftest import echo_tool


# ── Helpers ──────────────────────────────────────────────────


def _returns(messages) -> list[ToolReturnPart]:
    last = messages[-1]
    if not isinstance(last, ModelRequest):
        return []
    return [p for p in last.parts if isinstance(p, ToolReturnPart)]


def _call(text: str = "hi", call_id: str = "call-1", name: str = "echo") -> ToolCallPart:
    return ToolCallPart(tool_name=name, args={"text": text}, tool_call_id=call_id)


def tool_then_text(*calls: ToolCallPart, **response_kwargs):
    """Step 1 requests *calls*; step 2 answers with the tool outputs joined."""

    def fn(messages, info: AgentInfo) -> ModelResponse:
        returns = _returns(messages)
        if returns:
            text = " | ".join(str(r.content) for r in returns)
            return ModelResponse(parts=[TextPart(f"Result: {text}")], **response_kwargs)
        return ModelResponse(parts=list(calls or [_call()]), **response_kwargs)

    return FunctionModel(fn)


def text_model(text: str = "Hello") -> FunctionModel:
    return FunctionModel(lambda messages, info: ModelResponse(parts=[TextPart(text)]))


class SilentModel(Model):
    """Answers with text and reports no token usage at all."""

    def __init__(self):
        super().__init__()

    async def request(self, messages, model_settings, model_request_parameters):
        return ModelResponse(parts=[TextPart("ok")], model_name=self.model_name)

    @property
    def model_name(self) -> str:
        return "silent"

    @property
    def system(self) -> str:
        return "test"


def _types(events) -> list[str]:
    return [e.type for e in events]


# ── Basic generation ─────────────────────────────────────────


class TestGenerate:
    @pytest.mark.asyncio
    async def test_text_answer(self, make_runtime, call_options):
        runtime = make_runtime(text_model("Hello Ana"))
        events = []
        result = await runtime.generate("hi", call_options, on_event=events.append)
        assert result.status == RunStatus.FINISHED
        assert result.text == "Hello Ana"
        assert result.steps == 1
        assert result.finish_reason == "stop"
        assert _types(events) == ["text-delta", "finish"]

    @pytest.mark.asyncio
    async def test_instructions_carry_caller_context(self, make_runtime, call_options):
        seen = []

        def fn(messages, info):
            seen.extend(messages)
            return ModelResponse(parts=[TextPart("ok")])

        await make_runtime(FunctionModel(fn)).generate("hi", call_options)
        system = seen[0].parts[0]
        assert isinstance(system, SystemPromptPart)
        assert "User: Ana" in system.content
        assert "Role: Teacher" in system.content
        assert "FAST" in system.content

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, make_runtime, gateway, call_options):
        gateway.register(echo_tool())
        events = []
        result = await make_runtime(tool_then_text()).generate(
            "echo hi", call_options, on_event=events.append
        )
        assert result.status == RunStatus.FINISHED
        assert result.text == "Result: HI"
        assert result.steps == 2
        assert _types(events) == ["tool-call", "tool-result", "text-delta", "finish"]
        assert events[1].output == {"echo": "HI", "tenant": "tenant-1"}

    @pytest.mark.asyncio
    async def test_text_of_consecutive_steps_is_separated(self, make_runtime, gateway, call_options):
        gateway.register(echo_tool())

        def fn(messages, info):
            if _returns(messages):
                return ModelResponse(parts=[TextPart("Done.")])
            return ModelResponse(parts=[TextPart("Let me check."), _call()])

        result = await make_runtime(FunctionModel(fn)).generate("hi", call_options)
        assert result.text == "Let me check.\n\nDone."

    @pytest.mark.asyncio
    async def test_tool_results_keep_request_order(self, make_runtime, gateway, call_options):
        async def slow_echo(data, ctx):
            await asyncio.sleep(0.05 if data.text == "a" else 0)
            return {"echo": data.text.upper()}

        gateway.register(echo_tool(execute=slow_echo))
        model = tool_then_text(_call("a", "call-a"), _call("b", "call-b"))
        result = await make_runtime(model).generate("both", call_options)
        assert result.text == "Result: A | B"

    @pytest.mark.asyncio
    async def test_tool_failure_is_isolated(self, make_runtime, gateway, call_options):
        def boom(data, ctx):
            raise RuntimeError("boom")

        gateway.register(echo_tool(execute=boom))
        events = []
        result = await make_runtime(tool_then_text()).generate(
            "hi", call_options, on_event=events.append
        )
        assert result.status == RunStatus.FINISHED
        assert result.text == "Result: Error: RuntimeError: boom"
        tool_result = next(e for e in events if e.type == "tool-result")
        assert tool_result.is_error

    @pytest.mark.asyncio
    async def test_unknown_tool_is_reported_to_model(self, make_runtime, call_options):
        model = tool_then_text(_call(name="nope"))
        result = await make_runtime(model).generate("hi", call_options)
        assert result.status == RunStatus.FINISHED
        assert "Unknown tool 'nope'" in result.text

    @pytest.mark.asyncio
    async def test_invalid_tool_input_is_reported_to_model(self, make_runtime, gateway, call_options):
        gateway.register(echo_tool())
        bad = ToolCallPart(tool_name="echo", args={"wrong": 1}, tool_call_id="call-1")
        result = await make_runtime(tool_then_text(bad)).generate("hi", call_options)
        assert result.status == RunStatus.FINISHED
        assert "Error: Invalid input" in result.text

    @pytest.mark.asyncio
    async def test_reasoning_only_sent_when_requested(self, make_runtime):
        model = FunctionModel(
            lambda messages, info: ModelResponse(parts=[ThinkingPart("thinking"), TextPart("ok")])
        )
        options = AgentCallOptions(tenant_id="t", user_id="u", send_reasoning=True)
        events = []
        await make_runtime(model).generate("hi", options, on_event=events.append)
        assert "reasoning-delta" in _types(events)

        events.clear()
        await make_runtime(model).generate("hi", options.model_copy(update={"send_reasoning": False}),
                                           on_event=events.append)
        assert "reasoning-delta" not in _types(events)


# ── Usage ────────────────────────────────────────────────────


class TestUsage:
    @pytest.mark.asyncio
    async def test_usage_is_summed_over_steps(self, make_runtime, gateway, call_options):
        gateway.register(echo_tool())
        model = tool_then_text(usage=RequestUsage(input_tokens=10, output_tokens=4))
        result = await make_runtime(model).generate("hi", call_options)
        assert result.usage.input_tokens == 20
        assert result.usage.output_tokens == 8
        assert result.usage.total_tokens == 28

    @pytest.mark.asyncio
    async def test_usage_absent_when_provider_reports_none(self, make_runtime, call_options):
        result = await make_runtime(SilentModel()).generate("hi", call_options)
        assert result.status == RunStatus.FINISHED
        assert result.usage is None


# ── Approval gate ────────────────────────────────────────────


class TestApproval:
    @pytest.mark.asyncio
    async def test_gated_call_suspends_run(self, make_runtime, gateway, call_options):
        execute = MagicMock(return_value={"echo": "HI"})
        gateway.register(echo_tool(execute=execute, needs_approval=always_approve))
        events = []
        result = await make_runtime(tool_then_text()).generate(
            "hi", call_options, on_event=events.append
        )
        assert result.status == RunStatus.PENDING_APPROVAL
        assert [p.tool_call_id for p in result.pending_approvals] == ["call-1"]
        assert _types(events) == ["tool-call", "tool-approval-request", "finish"]
        assert events[-1].finish_reason == "pending_approval"
        execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_whole_step_waits_for_approval(self, make_runtime, gateway, call_options):
        plain = MagicMock(return_value={"echo": "PLAIN"})
        gated = MagicMock(return_value={"echo": "GATED"})
        gateway.register(echo_tool(execute=plain))
        gateway.register(echo_tool(name="gated", execute=gated, needs_approval=always_approve))
        model = tool_then_text(_call("x", "call-1"), _call("y", "call-2", name="gated"))
        result = await make_runtime(model).generate("hi", call_options)
        assert result.status == RunStatus.PENDING_APPROVAL
        assert [p.tool_name for p in result.pending_approvals] == ["gated"]
        plain.assert_not_called()
        gated.assert_not_called()

    async def _suspended_conversation(self, memory) -> ConversationContext:
        context = ConversationContext(tenant_id="tenant-1", user_id="user-1", conversation_id="conv-1")
        await memory.append(context, [
            Message.user("echo hi"),
            Message(role="assistant", parts=[
                StoredToolCall(tool_call_id="call-1", tool_name="echo", input={"text": "hi"}),
                ApprovalRequestPart(tool_call_id="call-1", tool_name="echo", input={"text": "hi"}),
            ]),
        ])
        return context

    def _resume_options(self, approved: bool) -> AgentCallOptions:
        return AgentCallOptions(
            tenant_id="tenant-1", user_id="user-1", conversation_id="conv-1",
            approvals={"call-1": approved},
        )

    @pytest.mark.asyncio
    async def test_resume_executes_approved_call(self, make_runtime, gateway, memory):
        execute = MagicMock(return_value={"echo": "HI"})
        gateway.register(echo_tool(execute=execute, needs_approval=always_approve))
        await self._suspended_conversation(memory)

        events = []
        runtime = make_runtime(tool_then_text(), memory=memory)
        result = await runtime.generate("", self._resume_options(True), on_event=events.append)

        assert result.status == RunStatus.FINISHED
        assert result.text == "Result: HI"
        execute.assert_called_once()
        assert _types(events) == ["tool-approval-response", "tool-result", "text-delta", "finish"]
        assert events[0].approved is True

    @pytest.mark.asyncio
    async def test_resume_records_denial(self, make_runtime, gateway, memory):
        execute = MagicMock(return_value={"echo": "HI"})
        gateway.register(echo_tool(execute=execute, needs_approval=always_approve))
        await self._suspended_conversation(memory)

        events = []
        runtime = make_runtime(tool_then_text(), memory=memory)
        result = await runtime.generate("", self._resume_options(False), on_event=events.append)

        assert result.status == RunStatus.FINISHED
        assert result.text == f"Result: Error: {DENIED_MESSAGE}"
        execute.assert_not_called()
        assert events[0].approved is False
        assert events[1].is_error

    @pytest.mark.asyncio
    async def test_answered_calls_are_not_pending(self):
        history = [
            Message(role="assistant", parts=[
                StoredToolCall(tool_call_id="call-1", tool_name="echo"),
                ApprovalRequestPart(tool_call_id="call-1", tool_name="echo"),
            ]),
            Message(role="assistant", parts=[
                StoredToolResult(tool_call_id="call-1", tool_name="echo", model_text="HI"),
            ]),
        ]
        message, calls = find_pending_calls(history)
        assert message is history[0]
        assert calls == []
        assert find_pending_calls([Message.user("hi")]) == (None, [])


# ── Retries ──────────────────────────────────────────────────


class TestRetries:
    @pytest.mark.asyncio
    async def test_retry_then_success(self, make_runtime, call_options, metrics):
        attempts = []

        def flaky(messages, info):
            attempts.append(1)
            if len(attempts) < 3:
                raise ModelHTTPError(status_code=503, model_name="test")
            return ModelResponse(parts=[TextPart("recovered")])

        result = await make_runtime(FunctionModel(flaky), agent_max_retries=3).generate(
            "hi", call_options
        )
        assert result.status == RunStatus.FINISHED
        assert result.text == "recovered"
        assert len(attempts) == 3
        assert metrics.snapshot()["models"]["gpt-4o-mini"]["retries"] == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_runtime, call_options):
        attempts = []

        def down(messages, info):
            attempts.append(1)
            raise TransientProviderError("overloaded", status_code=529)

        events = []
        result = await make_runtime(FunctionModel(down), agent_max_retries=2).generate(
            "hi", call_options, on_event=events.append
        )
        assert result.status == RunStatus.FAILED
        assert result.error.code == ErrorCode.LLM_PROVIDER_ERROR
        assert len(attempts) == 3
        assert _types(events) == ["error"]

    @pytest.mark.asyncio
    async def test_non_transient_error_is_not_retried(self, make_runtime, call_options):
        attempts = []

        def broken(messages, info):
            attempts.append(1)
            raise ModelHTTPError(status_code=400, model_name="test")

        result = await make_runtime(FunctionModel(broken)).generate("hi", call_options)
        assert result.status == RunStatus.FAILED
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_stream_is_not_retried_after_output(self, make_runtime, call_options):
        attempts = []

        async def stream_fn(messages, info):
            attempts.append(1)
            yield "partial"
            raise TransientProviderError("connection reset")

        runtime = make_runtime(FunctionModel(stream_function=stream_fn))
        events = [e async for e in runtime.stream("hi", call_options)]
        assert len(attempts) == 1
        assert events[-1].type == "error"
        assert events[-1].text == "partial"

    def test_transient_classification(self):
        assert is_transient_error(ModelHTTPError(status_code=429, model_name="m"))
        assert is_transient_error(ModelHTTPError(status_code=502, model_name="m"))
        assert not is_transient_error(ModelHTTPError(status_code=401, model_name="m"))
        assert is_transient_error(ConnectionError("reset"))
        assert not is_transient_error(ValueError("bad"))


# ── Bounds and failures ──────────────────────────────────────


class TestBounds:
    @pytest.mark.asyncio
    async def test_step_limit(self, make_runtime, gateway, call_options, metrics):
        gateway.register(echo_tool())
        model = FunctionModel(lambda messages, info: ModelResponse(parts=[_call()]))
        result = await make_runtime(model, max_steps=3).generate("loop", call_options)
        assert result.status == RunStatus.FINISHED
        assert result.finish_reason == "step_limit"
        assert result.steps == 3
        assert metrics.snapshot()["tools"]["echo"]["count"] == 3

    @pytest.mark.asyncio
    async def test_timeout(self, make_runtime, call_options):
        async def slow(messages, info):
            await asyncio.sleep(1)
            return ModelResponse(parts=[TextPart("late")])

        events = []
        runtime = make_runtime(FunctionModel(slow), agent_timeout_s=0.05)
        result = await runtime.generate("hi", call_options, on_event=events.append)
        assert result.status == RunStatus.FAILED
        assert result.error.code == ErrorCode.RUN_TIMEOUT
        assert events[-1].type == "error"

    @pytest.mark.asyncio
    async def test_unavailable_provider_fails_run(self, make_runtime, call_options):
        result = await make_runtime(text_model(), openai_api_key="").generate("hi", call_options)
        assert result.status == RunStatus.FAILED
        assert result.error.code == ErrorCode.PROVIDER_UNAVAILABLE
        assert result.steps == 0

    @pytest.mark.asyncio
    async def test_invalid_options_raise(self, make_runtime):
        with pytest.raises(ConfigurationError):
            await make_runtime(text_model()).generate("hi", {"tenant_id": "", "user_id": "u"})


# ── Streaming ────────────────────────────────────────────────


class TestStream:
    @pytest.mark.asyncio
    async def test_text_events_are_cumulative(self, make_runtime, call_options):
        async def stream_fn(messages, info):
            yield "Hel"
            yield "lo"

        runtime = make_runtime(FunctionModel(stream_function=stream_fn))
        events = [e async for e in runtime.stream("hi", call_options)]
        texts = [e.text for e in events if e.type == "text-delta"]
        assert texts[-1] == "Hello"
        assert "".join(e.delta for e in events if e.type == "text-delta") == "Hello"
        assert events[-1].type == "finish"
        assert events[-1].text == "Hello"

    @pytest.mark.asyncio
    async def test_streamed_tool_round_trip(self, make_runtime, gateway, call_options):
        gateway.register(echo_tool())

        async def stream_fn(messages, info):
            if _returns(messages):
                yield "Echoed."
            else:
                yield {0: DeltaToolCall(name="echo", json_args='{"text": "hi"}', tool_call_id="call-1")}

        runtime = make_runtime(FunctionModel(stream_function=stream_fn))
        events = [e async for e in runtime.stream("hi", call_options)]
        types = _types(events)
        assert types[:2] == ["tool-call", "tool-result"]
        assert types[-1] == "finish"
        assert events[0].input == {"text": "hi"}

    @pytest.mark.asyncio
    async def test_closing_stream_cancels_run(self, make_runtime, call_options):
        finished = []

        async def stream_fn(messages, info):
            yield "first"
            await asyncio.sleep(10)
            finished.append(True)
            yield "never"

        runtime = make_runtime(FunctionModel(stream_function=stream_fn))
        events = runtime.stream("hi", call_options)
        first = await asyncio.wait_for(events.__anext__(), timeout=2)
        assert first.delta == "first"
        await asyncio.wait_for(events.aclose(), timeout=2)
        assert finished == []
