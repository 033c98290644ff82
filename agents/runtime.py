"""AgentRuntime: bounded model⇄tool loop with approval gating.

One runtime per agent definition.  Each call to :meth:`AgentRuntime.generate`
or :meth:`AgentRuntime.stream` is an independent run:

1. Resolve the model handle (fails fast with ``ConfigurationError``)
2. Build instructions + replayed history + the new user turn
3. Loop: model step → tool calls → tool results, up to ``max_steps``
4. Suspend when a tool needs approval that the caller hasn't given yet;
   a later call carrying ``approvals`` resumes the suspended step
5. Emit structured JSON logs for every state transition

The runtime drives PydanticAI models directly (``pydantic_ai.direct``) so it
owns retries, the step bound and the approval gate.  Tool failures are
returned to the model as ``"Error: ..."`` tool results and never fail a run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
from pydantic import ValidationError as PydanticValidationError
from pydantic_ai.direct import model_request, model_request_stream
from pydantic_ai.exceptions import ModelHTTPError
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    PartDeltaEvent,
    PartStartEvent,
    SystemPromptPart,
    TextPart,
    TextPartDelta,
    ThinkingPart,
    ThinkingPartDelta,
    ToolCallPart,
    ToolReturnPart,
    UserPromptPart,
)
from pydantic_ai.models import ModelRequestParameters

from agents.provider import ModelHandle, ModelProviderRegistry
from config.prompts.assistant import BASE_INSTRUCTIONS, build_assistant_instructions
from config.settings import Settings, get_settings
from errors.exceptions import (
    AssistantError,
    ConfigurationError,
    PersistenceError,
    RunFailure,
    TransientProviderError,
    ValidationError,
)
from models.agent import (
    AgentCallOptions,
    AgentRunResult,
    ErrorInfo,
    PendingApproval,
    RunState,
    RunStatus,
    TokenUsage,
)
from models.conversation import ApprovalRequestPart, Message
from models.errors import classify_exception
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
from services.conversation_store import ConversationMemoryStore, to_model_messages
from services.metrics import MetricsCollector, get_metrics_collector
from tools.registry import BoundTool, ToolContext, ToolExecutionGateway, ToolInvocation

logger = logging.getLogger(__name__)

Emit = Callable[[StreamEvent], Awaitable[None]]

_TRANSIENT_STATUS = frozenset({408, 409, 429})
_TRANSIENT_NAME_MARKERS = (
    "Timeout",
    "Connection",
    "RateLimit",
    "Overloaded",
    "InternalServer",
    "ServiceUnavailable",
)
_DONE = object()


def is_transient_error(exc: BaseException) -> bool:
    """True for failures worth retrying at the provider-call boundary."""
    if isinstance(exc, TransientProviderError):
        return True
    if isinstance(exc, ModelHTTPError):
        return exc.status_code in _TRANSIENT_STATUS or exc.status_code >= 500
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, ConnectionError, TimeoutError)):
        return True
    # Provider SDK errors (openai.APIConnectionError, anthropic.RateLimitError, ...)
    name = type(exc).__name__
    return any(marker in name for marker in _TRANSIENT_NAME_MARKERS)


def coerce_options(options: AgentCallOptions | dict[str, Any]) -> AgentCallOptions:
    """Validate call options; invalid options are a configuration error."""
    if isinstance(options, AgentCallOptions):
        return options
    try:
        return AgentCallOptions.model_validate(options)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid call options: {exc.error_count()} error(s)") from exc


@dataclass
class AgentDefinition:
    """Static agent configuration, registered once at start-up."""

    name: str
    instructions: str = BASE_INSTRUCTIONS
    description: str = ""
    # None = every tool registered in the gateway
    tool_names: list[str] | None = None
    max_steps: int | None = None
    provider: str | None = None
    model: str | None = None


@dataclass
class _Run:
    """Mutable state owned by a single run."""

    run_id: str
    prompt: str
    options: AgentCallOptions
    tool_context: ToolContext
    state: RunState = RunState.IDLE
    status: RunStatus | None = None
    messages: list[ModelMessage] = field(default_factory=list)
    text: str = ""
    reasoning: str = ""
    step_has_text: bool = False
    step_emitted: bool = False
    usage: TokenUsage | None = None
    steps: int = 0
    finish_reason: str | None = None
    error: ErrorInfo | None = None
    pending: list[PendingApproval] = field(default_factory=list)

    def result(self) -> AgentRunResult:
        return AgentRunResult(
            status=self.status or RunStatus.FAILED,
            text=self.text,
            messages=list(self.messages),
            usage=self.usage,
            steps=self.steps,
            finish_reason=self.finish_reason,
            error=self.error,
            pending_approvals=list(self.pending),
        )


def find_pending_calls(history: list[Message]) -> tuple[Message | None, list[Any]]:
    """Locate the suspended step in *history*.

    Returns the last assistant message carrying approval requests and its
    tool-call parts that have no result anywhere later in the history.
    """
    for index in range(len(history) - 1, -1, -1):
        message = history[index]
        if message.role != "assistant":
            continue
        if not any(isinstance(p, ApprovalRequestPart) for p in message.parts):
            continue
        answered = {
            r.tool_call_id for later in history[index:] for r in later.tool_result_parts()
        }
        calls = [c for c in message.tool_call_parts() if c.tool_call_id not in answered]
        return message, calls
    return None, []


def _call_input(call: ToolCallPart) -> dict[str, Any]:
    try:
        return call.args_as_dict()
    except ValueError:
        return {"_raw": call.args}


class AgentRuntime:
    """Run an :class:`AgentDefinition` against a resolved model."""

    def __init__(
        self,
        definition: AgentDefinition,
        providers: ModelProviderRegistry,
        gateway: ToolExecutionGateway,
        memory: ConversationMemoryStore | None = None,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.definition = definition
        self._providers = providers
        self._gateway = gateway
        self._memory = memory
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics_collector()

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def max_steps(self) -> int:
        return self.definition.max_steps or self._settings.agent_max_steps

    # ── Public API ──────────────────────────────────────────

    async def generate(
        self,
        prompt: str,
        options: AgentCallOptions | dict[str, Any],
        on_event: Callable[[StreamEvent], None] | None = None,
    ) -> AgentRunResult:
        """Run to completion and return the result.

        Raises:
            ConfigurationError: *options* are invalid.
        """
        run = self._new_run(prompt, coerce_options(options))

        async def emit(event: StreamEvent) -> None:
            if on_event is not None:
                on_event(event)

        await self._drive(run, emit, streaming=False)
        return run.result()

    async def stream(
        self, prompt: str, options: AgentCallOptions | dict[str, Any]
    ) -> AsyncIterator[StreamEvent]:
        """Yield events in arrival order, ending with ``finish`` or ``error``.

        The run executes in a producer task; closing the iterator early
        cancels it, which aborts the in-flight model call.
        """
        run = self._new_run(prompt, coerce_options(options))
        queue: asyncio.Queue[Any] = asyncio.Queue()
        producer = asyncio.create_task(self._drive(run, queue.put, streaming=True))
        producer.add_done_callback(lambda _: queue.put_nowait(_DONE))
        try:
            while True:
                event = await queue.get()
                if event is _DONE:
                    break
                yield event
        finally:
            if not producer.done():
                logger.info("Run %s: consumer went away, cancelling producer", run.run_id)
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)

    # ── Run driver ──────────────────────────────────────────

    def _new_run(self, prompt: str, options: AgentCallOptions) -> _Run:
        run_id = f"run-{uuid.uuid4().hex[:10]}"
        return _Run(
            run_id=run_id,
            prompt=prompt,
            options=options,
            tool_context=ToolContext(
                tenant_id=options.tenant_id,
                user_id=options.user_id,
                school_id=options.school_id,
                conversation_id=options.conversation_id,
                response_mode=options.response_mode,
                run_id=run_id,
            ),
        )

    async def _drive(self, run: _Run, emit: Emit, streaming: bool) -> None:
        _log_turn_start(self.name, run)
        start_time = time.monotonic()
        timeout = self._settings.agent_timeout_s
        try:
            await asyncio.wait_for(self._execute(run, emit, streaming), timeout=timeout)
        except asyncio.TimeoutError:
            await self._fail(run, emit, RunFailure(f"Run exceeded {timeout}s", timed_out=True))
        except AssistantError as exc:
            await self._fail(run, emit, exc)
        except Exception as exc:
            logger.exception("Run %s crashed", run.run_id)
            await self._fail(run, emit, exc)
        finally:
            elapsed_ms = (time.monotonic() - start_time) * 1000
            self._metrics.record_run(
                run_id=run.run_id,
                status=(run.status or RunStatus.FAILED).value,
                steps=run.steps,
                latency_ms=elapsed_ms,
                input_tokens=run.usage.input_tokens if run.usage else None,
                output_tokens=run.usage.output_tokens if run.usage else None,
                conversation_id=run.options.conversation_id or "",
            )
            _log_turn_end(self.name, run, elapsed_ms, self._metrics.get_run_summary(run.run_id))

    async def _fail(self, run: _Run, emit: Emit, exc: BaseException) -> None:
        code, message = classify_exception(exc)
        logger.warning("Run %s failed: %s: %s", run.run_id, type(exc).__name__, exc)
        run.status = RunStatus.FAILED
        run.error = ErrorInfo(code=code, message=message)
        run.finish_reason = "error"
        self._transition(run, RunState.FAILED)
        await emit(ErrorEvent(code=code, message=message, text=run.text))

    async def _execute(self, run: _Run, emit: Emit, streaming: bool) -> None:
        options = run.options
        handle = self._providers.require(
            options.provider or self.definition.provider,
            options.model or self.definition.model,
        )
        model_settings = handle.model_settings(
            max_tokens=self._settings.agent_max_tokens,
            send_reasoning=options.send_reasoning,
        )
        tool_set = self._gateway.build_tool_set(run.tool_context, self.definition.tool_names)
        params = ModelRequestParameters(
            function_tools=[bound.definition() for bound in tool_set.values()],
            allow_text_output=True,
        )

        history = await self._load_history(run)
        instructions = build_assistant_instructions(
            options, run.prompt, base=self.definition.instructions
        )
        run.messages.append(ModelRequest(parts=[SystemPromptPart(content=instructions)]))

        pending_message, pending_calls = find_pending_calls(history)
        gated_ids = {
            p.tool_call_id for p in (pending_message.parts if pending_message else [])
            if isinstance(p, ApprovalRequestPart)
        }
        open_gated = {c.tool_call_id for c in pending_calls} & gated_ids
        if open_gated and open_gated <= options.approvals.keys():
            await self._resume(run, history, pending_message, pending_calls, tool_set, emit)
        else:
            history_limit = self._settings.history_load_limit
            run.messages.extend(to_model_messages(history[-history_limit:]))
            run.messages.append(ModelRequest(parts=[UserPromptPart(content=run.prompt)]))

        await self._loop(run, handle, model_settings, params, tool_set, emit, streaming)

    async def _load_history(self, run: _Run) -> list[Message]:
        if self._memory is None or not run.options.conversation_id:
            return []
        try:
            return await self._memory.read(run.options.conversation_context())
        except PersistenceError:
            logger.warning("Run %s: history unavailable, continuing without it", run.run_id,
                           exc_info=True)
            return []

    async def _resume(
        self,
        run: _Run,
        history: list[Message],
        pending_message: Message,
        pending_calls: list[Any],
        tool_set: dict[str, BoundTool],
        emit: Emit,
    ) -> None:
        """Re-enter a suspended step: execute approved calls, record denials."""
        logger.info(json.dumps({
            "event": "run_resume",
            "run_id": run.run_id,
            "tool_call_ids": [c.tool_call_id for c in pending_calls],
        }))
        index = history.index(pending_message)
        history_limit = self._settings.history_load_limit
        run.messages.extend(to_model_messages(history[max(0, index - history_limit):index]))

        calls = [
            ToolCallPart(tool_name=c.tool_name, args=c.input, tool_call_id=c.tool_call_id)
            for c in pending_calls
        ]
        response_parts: list[Any] = []
        if pending_message.text():
            response_parts.append(TextPart(content=pending_message.text()))
        response_parts.extend(calls)
        run.messages.append(ModelResponse(parts=response_parts))

        self._transition(run, RunState.TOOL_EXECUTING)
        request_parts: list[Any] = await self._run_tools(run, calls, tool_set, emit)
        if run.prompt:
            request_parts.append(UserPromptPart(content=run.prompt))
        run.messages.append(ModelRequest(parts=request_parts))

    async def _loop(
        self,
        run: _Run,
        handle: ModelHandle,
        model_settings: dict[str, Any],
        params: ModelRequestParameters,
        tool_set: dict[str, BoundTool],
        emit: Emit,
        streaming: bool,
    ) -> None:
        while True:
            if run.steps >= self.max_steps:
                logger.warning("Run %s hit the step limit (%d)", run.run_id, self.max_steps)
                run.finish_reason = "step_limit"
                break

            self._transition(run, RunState.AWAITING_MODEL)
            response = await self._call_model(run, handle, model_settings, params, emit, streaming)
            run.steps += 1
            run.messages.append(response)
            self._add_usage(run, response.usage)

            calls = [p for p in response.parts if isinstance(p, ToolCallPart)]
            if not calls:
                run.finish_reason = getattr(response, "finish_reason", None) or "stop"
                break

            self._transition(run, RunState.TOOL_REQUESTED)
            for call in calls:
                await emit(ToolCallEvent(
                    tool_call_id=call.tool_call_id,
                    tool_name=call.tool_name,
                    input=_call_input(call),
                ))

            if await self._suspend_for_approval(run, calls, tool_set, emit):
                return

            self._transition(run, RunState.TOOL_EXECUTING)
            returns = await self._run_tools(run, calls, tool_set, emit)
            run.messages.append(ModelRequest(parts=returns))

        run.status = RunStatus.FINISHED
        self._transition(run, RunState.FINISHED)
        await emit(FinishEvent(
            text=run.text, finish_reason=run.finish_reason or "stop",
            usage=run.usage, steps=run.steps,
        ))

    # ── Model calls ─────────────────────────────────────────

    async def _call_model(
        self,
        run: _Run,
        handle: ModelHandle,
        model_settings: dict[str, Any],
        params: ModelRequestParameters,
        emit: Emit,
        streaming: bool,
    ) -> ModelResponse:
        """One model step with retry on transient failures.

        A streaming step is only retried while nothing has been emitted for
        it, so consumers never see duplicated text.
        """
        max_retries = self._settings.agent_max_retries
        run.step_has_text = False
        run.step_emitted = False
        attempt = 0
        while True:
            try:
                if streaming:
                    response = await self._stream_step(run, handle, model_settings, params, emit)
                else:
                    response = await model_request(
                        handle.model,
                        run.messages,
                        model_settings=model_settings or None,
                        model_request_parameters=params,
                    )
                    await self._emit_response(run, response, emit)
            except Exception as exc:
                transient = is_transient_error(exc)
                if transient and attempt < max_retries and not run.step_emitted:
                    delay = self._settings.retry_backoff_s * (2 ** attempt)
                    attempt += 1
                    logger.warning(
                        "Run %s: transient provider error (%s), retry %d/%d in %.2fs",
                        run.run_id, type(exc).__name__, attempt, max_retries, delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                self._metrics.record_model_call(
                    model_name=handle.model_name, status="error", retries=attempt, run_id=run.run_id
                )
                reason = "retries exhausted" if transient else "unrecoverable provider error"
                raise RunFailure(
                    f"Model call failed ({reason}): {type(exc).__name__}: {exc}",
                    attempts=attempt + 1,
                ) from exc

            self._metrics.record_model_call(
                model_name=handle.model_name, status="ok", retries=attempt, run_id=run.run_id
            )
            return response

    async def _stream_step(
        self,
        run: _Run,
        handle: ModelHandle,
        model_settings: dict[str, Any],
        params: ModelRequestParameters,
        emit: Emit,
    ) -> ModelResponse:
        async with model_request_stream(
            handle.model,
            run.messages,
            model_settings=model_settings or None,
            model_request_parameters=params,
        ) as streamed:
            async for event in streamed:
                if isinstance(event, PartStartEvent):
                    if isinstance(event.part, TextPart):
                        await self._emit_text(run, event.part.content, emit)
                    elif isinstance(event.part, ThinkingPart):
                        await self._emit_reasoning(run, event.part.content, emit)
                elif isinstance(event, PartDeltaEvent):
                    if isinstance(event.delta, TextPartDelta):
                        await self._emit_text(run, event.delta.content_delta, emit)
                    elif isinstance(event.delta, ThinkingPartDelta):
                        await self._emit_reasoning(run, event.delta.content_delta or "", emit)
            return streamed.get()

    async def _emit_response(self, run: _Run, response: ModelResponse, emit: Emit) -> None:
        for part in response.parts:
            if isinstance(part, ThinkingPart):
                await self._emit_reasoning(run, part.content, emit)
            elif isinstance(part, TextPart):
                await self._emit_text(run, part.content, emit)

    async def _emit_text(self, run: _Run, delta: str, emit: Emit) -> None:
        if not delta:
            return
        # Separate text produced by consecutive steps.
        if not run.step_has_text and run.text and not run.text.endswith("\n"):
            delta = "\n\n" + delta
        run.step_has_text = True
        run.step_emitted = True
        run.text += delta
        await emit(TextDeltaEvent(text=run.text, delta=delta))

    async def _emit_reasoning(self, run: _Run, delta: str, emit: Emit) -> None:
        if not delta or not run.options.send_reasoning:
            return
        run.step_emitted = True
        run.reasoning += delta
        await emit(ReasoningDeltaEvent(text=run.reasoning, delta=delta))

    @staticmethod
    def _add_usage(run: _Run, usage: Any) -> None:
        if usage is None:
            return
        input_tokens = getattr(usage, "input_tokens", None) or getattr(usage, "request_tokens", None) or 0
        output_tokens = getattr(usage, "output_tokens", None) or getattr(usage, "response_tokens", None) or 0
        if not input_tokens and not output_tokens:
            return
        step = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        run.usage = step if run.usage is None else run.usage + step

    # ── Tools ───────────────────────────────────────────────

    async def _suspend_for_approval(
        self, run: _Run, calls: list[ToolCallPart], tool_set: dict[str, BoundTool], emit: Emit
    ) -> bool:
        """Suspend the whole step if any call needs an approval not yet given."""
        waiting: list[ToolCallPart] = []
        for call in calls:
            bound = tool_set.get(call.tool_name)
            if bound is None:
                continue
            try:
                prepared = bound.prepare(call.args if call.args is not None else {})
            except ValidationError:
                # Surfaces as a tool-error result when the step executes.
                continue
            if prepared.requires_approval and call.tool_call_id not in run.options.approvals:
                waiting.append(call)

        if not waiting:
            return False

        self._transition(run, RunState.AWAITING_APPROVAL)
        for call in waiting:
            pending = PendingApproval(
                tool_call_id=call.tool_call_id, tool_name=call.tool_name, input=_call_input(call)
            )
            run.pending.append(pending)
            await emit(ToolApprovalRequestEvent(
                tool_call_id=pending.tool_call_id, tool_name=pending.tool_name, input=pending.input
            ))
        run.status = RunStatus.PENDING_APPROVAL
        run.finish_reason = "pending_approval"
        await emit(FinishEvent(
            text=run.text, finish_reason=run.finish_reason, usage=run.usage, steps=run.steps
        ))
        return True

    async def _run_tools(
        self, run: _Run, calls: list[ToolCallPart], tool_set: dict[str, BoundTool], emit: Emit
    ) -> list[Any]:
        """Execute *calls* concurrently; results come back in request order."""
        approvals = run.options.approvals

        async def invoke(call: ToolCallPart) -> ToolInvocation:
            bound = tool_set.get(call.tool_name)
            if bound is None:
                message = f"Unknown tool '{call.tool_name}'"
                return ToolInvocation(
                    tool_name=call.tool_name, status="error", error=message,
                    model_text=f"Error: {message}",
                )
            return await bound.invoke(
                call.args if call.args is not None else {},
                approved=approvals.get(call.tool_call_id),
            )

        invocations = await asyncio.gather(*(invoke(call) for call in calls))

        returns: list[Any] = []
        for call, invocation in zip(calls, invocations):
            decision = approvals.get(call.tool_call_id)
            if invocation.requires_approval and decision is not None:
                await emit(ToolApprovalResponseEvent(
                    tool_call_id=call.tool_call_id, approved=decision,
                    reason=None if decision else invocation.error,
                ))
            await emit(ToolResultEvent(
                tool_call_id=call.tool_call_id,
                tool_name=call.tool_name,
                output=invocation.output if not invocation.is_error else invocation.error,
                model_text=invocation.model_text,
                is_error=invocation.is_error,
            ))
            returns.append(ToolReturnPart(
                tool_name=call.tool_name,
                content=invocation.model_text,
                tool_call_id=call.tool_call_id,
            ))
        return returns

    # ── Logging ─────────────────────────────────────────────

    def _transition(self, run: _Run, state: RunState) -> None:
        previous, run.state = run.state, state
        logger.info(json.dumps({
            "event": "state_transition",
            "agent": self.name,
            "run_id": run.run_id,
            "conversation_id": run.options.conversation_id,
            "from": previous.value,
            "to": state.value,
            "step": run.steps,
        }))


def _log_turn_start(agent: str, run: _Run) -> None:
    """Emit structured JSON log at run start."""
    logger.info(json.dumps({
        "event": "turn_start",
        "agent": agent,
        "run_id": run.run_id,
        "conversation_id": run.options.conversation_id,
        "tenant_id": run.options.tenant_id,
        "user_id": run.options.user_id,
        "response_mode": run.options.response_mode,
        "resume": bool(run.options.approvals),
        "message_preview": run.prompt[:100],
    }, ensure_ascii=False))


def _log_turn_end(agent: str, run: _Run, elapsed_ms: float, metrics: dict) -> None:
    """Emit structured JSON log at run end."""
    logger.info(json.dumps({
        "event": "turn_end",
        "agent": agent,
        "run_id": run.run_id,
        "conversation_id": run.options.conversation_id,
        "status": run.status.value if run.status else None,
        "finish_reason": run.finish_reason,
        "steps": run.steps,
        "tool_call_count": metrics.get("tool_call_count", 0),
        "tool_error_count": metrics.get("tool_error_count", 0),
        "tool_latency_ms": round(metrics.get("tool_latency_ms", 0.0), 1),
        "model_retries": metrics.get("model_retries", 0),
        "total_latency_ms": round(elapsed_ms, 1),
        "token_usage_input": run.usage.input_tokens if run.usage else None,
        "token_usage_output": run.usage.output_tokens if run.usage else None,
    }, ensure_ascii=False))
