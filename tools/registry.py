"""Tool execution gateway: registration, validation, approval and execution.

Design:
- A tool is a :class:`ToolDefinition`: a pydantic input model (the schema
  sent to the model), an ``execute`` callable and optional ``guard``,
  ``needs_approval`` and ``output_formatter`` hooks.
- The gateway is constructed explicitly and populated at start-up; it is
  read-only afterwards and safe to share across concurrent runs.
- ``build_tool_set(context)`` binds tenant/user/school into per-run
  :class:`BoundTool` objects; tool code never sees another tenant's scope.
- ``invoke`` never raises for tool failures: validation errors, denials and
  execution errors come back as a :class:`ToolInvocation` whose
  ``model_text`` starts with ``"Error:"`` so the model can recover.
"""

from __future__ import annotations

import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Sequence, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pydantic_ai.tools import ToolDefinition as ModelToolDefinition

from errors.exceptions import ToolError, ToolExecutionError, ValidationError
from services.metrics import MetricsCollector, get_metrics_collector

logger = logging.getLogger(__name__)

InvocationStatus = Literal["ok", "error", "approval_required", "denied"]

DENIED_MESSAGE = "Tool execution was denied by the user."


@dataclass(frozen=True)
class ToolContext:
    """Per-run scope bound into every tool call."""

    tenant_id: str
    user_id: str
    school_id: str | None = None
    conversation_id: str | None = None
    response_mode: str = "fast"
    run_id: str = ""


def default_formatter(_input: BaseModel, output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, default=str)


def _never(_input: BaseModel) -> bool:
    return False


def always_approve(_input: BaseModel) -> bool:
    """``needs_approval`` hook for tools that always require confirmation."""
    return True


@dataclass
class ToolDefinition:
    """Static description of a tool."""

    name: str
    description: str
    input_model: type[BaseModel]
    execute: Callable[[Any, ToolContext], Union[Any, Awaitable[Any]]]
    needs_approval: Callable[[Any], bool] = _never
    output_formatter: Callable[[Any, Any], str] = default_formatter
    # Hard precondition, raises ValidationError; runs before needs_approval.
    guard: Callable[[Any], None] | None = None

    def model_definition(self) -> ModelToolDefinition:
        """The PydanticAI tool definition sent to the model."""
        return ModelToolDefinition(
            name=self.name,
            description=self.description,
            parameters_json_schema=self.input_model.model_json_schema(),
        )


@dataclass(frozen=True)
class PreparedCall:
    definition: ToolDefinition
    input: BaseModel
    requires_approval: bool

    @property
    def tool_name(self) -> str:
        return self.definition.name


@dataclass
class ToolInvocation:
    """Outcome of a single gateway invocation."""

    tool_name: str
    status: InvocationStatus
    output: Any = None
    model_text: str = ""
    error: str | None = None
    latency_ms: float = 0.0
    requires_approval: bool = False

    @property
    def is_error(self) -> bool:
        return self.status in ("error", "denied")


@dataclass
class BoundTool:
    """A tool bound to one run's :class:`ToolContext`."""

    gateway: ToolExecutionGateway
    tool: ToolDefinition
    context: ToolContext

    @property
    def name(self) -> str:
        return self.tool.name

    def definition(self) -> ModelToolDefinition:
        return self.tool.model_definition()

    def prepare(self, raw_input: Any) -> PreparedCall:
        return self.gateway.prepare(self.tool.name, raw_input, self.context)

    async def invoke(self, raw_input: Any, approved: bool | None = None) -> ToolInvocation:
        return await self.gateway.invoke(self.tool.name, raw_input, self.context, approved=approved)


@dataclass
class ToolExecutionGateway:
    """Registry and single execution path for every tool call."""

    metrics: MetricsCollector = field(default_factory=get_metrics_collector)

    def __post_init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    # ── Registration ────────────────────────────────────────

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._tools:
            logger.warning("Tool %s already registered, overwriting", definition.name)
        self._tools[definition.name] = definition

    def register_many(self, definitions: Sequence[ToolDefinition]) -> None:
        for definition in definitions:
            self.register(definition)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_names(self) -> list[str]:
        return list(self._tools.keys())

    def describe(self) -> list[dict[str, Any]]:
        """Return name, description and input schema for every tool."""
        return [
            {
                "name": d.name,
                "description": d.description,
                "parameters": d.input_model.model_json_schema(),
            }
            for d in self._tools.values()
        ]

    def build_tool_set(
        self, context: ToolContext, names: Sequence[str] | None = None
    ) -> dict[str, BoundTool]:
        """Bind tools to *context*.  ``names`` restricts the set; unknown names are skipped."""
        selected = self.list_names() if names is None else list(names)
        tool_set: dict[str, BoundTool] = {}
        for name in selected:
            definition = self._tools.get(name)
            if definition is None:
                logger.warning("Tool %s requested but not registered", name)
                continue
            tool_set[name] = BoundTool(gateway=self, tool=definition, context=context)
        return tool_set

    # ── Execution ───────────────────────────────────────────

    def prepare(self, name: str, raw_input: Any, context: ToolContext) -> PreparedCall:
        """Validate input, run the guard and evaluate the approval policy.

        Raises:
            ValidationError: unknown tool, schema mismatch or guard failure.
        """
        definition = self._tools.get(name)
        if definition is None:
            raise ValidationError(name, f"Unknown tool '{name}'")

        try:
            if isinstance(raw_input, (str, bytes)):
                parsed = definition.input_model.model_validate_json(raw_input or "{}")
            else:
                parsed = definition.input_model.model_validate(raw_input or {})
        except PydanticValidationError as exc:
            errors = exc.errors(include_url=False)
            summary = "; ".join(
                f"{'.'.join(str(p) for p in e['loc']) or 'input'}: {e['msg']}" for e in errors
            )
            raise ValidationError(name, f"Invalid input: {summary}", errors=errors) from exc

        if definition.guard is not None:
            definition.guard(parsed)

        return PreparedCall(
            definition=definition,
            input=parsed,
            requires_approval=bool(definition.needs_approval(parsed)),
        )

    async def invoke(
        self,
        name: str,
        raw_input: Any,
        context: ToolContext,
        approved: bool | None = None,
    ) -> ToolInvocation:
        """Validate, gate and execute one tool call.  Never raises for tool failures."""
        try:
            prepared = self.prepare(name, raw_input, context)
        except ValidationError as exc:
            invocation = ToolInvocation(
                tool_name=name, status="error", error=str(exc), model_text=f"Error: {exc.detail}"
            )
            self._record(invocation, context)
            return invocation

        if prepared.requires_approval and approved is None:
            return ToolInvocation(
                tool_name=name,
                status="approval_required",
                model_text="Awaiting user approval.",
                requires_approval=True,
            )
        if prepared.requires_approval and approved is False:
            invocation = ToolInvocation(
                tool_name=name, status="denied", error=DENIED_MESSAGE,
                model_text=f"Error: {DENIED_MESSAGE}",
                requires_approval=True,
            )
            self._record(invocation, context)
            return invocation

        return await self.execute(prepared, context)

    async def execute(self, prepared: PreparedCall, context: ToolContext) -> ToolInvocation:
        """Execute an already-prepared (and, if gated, approved) call."""
        definition = prepared.definition
        start = time.monotonic()
        try:
            result = definition.execute(prepared.input, context)
            if inspect.isawaitable(result):
                result = await result
            model_text = definition.output_formatter(prepared.input, result)
            invocation = ToolInvocation(
                tool_name=definition.name, status="ok", output=result, model_text=model_text
            )
        except ToolError as exc:
            logger.warning("tool %s failed: %s", definition.name, exc)
            invocation = ToolInvocation(
                tool_name=definition.name, status="error", error=str(exc),
                model_text=f"Error: {exc.detail}",
            )
        except Exception as exc:
            wrapped = ToolExecutionError(definition.name, f"{type(exc).__name__}: {exc}")
            logger.warning("tool %s raised an exception", definition.name, exc_info=True)
            invocation = ToolInvocation(
                tool_name=definition.name, status="error", error=str(wrapped),
                model_text=f"Error: {wrapped.detail}",
            )
        invocation.latency_ms = (time.monotonic() - start) * 1000
        invocation.requires_approval = prepared.requires_approval
        self._record(invocation, context)
        return invocation

    def _record(self, invocation: ToolInvocation, context: ToolContext) -> None:
        self.metrics.record_tool_call(
            tool_name=invocation.tool_name,
            status=invocation.status,
            latency_ms=invocation.latency_ms,
            run_id=context.run_id,
            conversation_id=context.conversation_id or "",
        )
        logger.info(json.dumps({
            "event": "tool_call",
            "tool": invocation.tool_name,
            "status": invocation.status,
            "latency_ms": round(invocation.latency_ms, 2),
            "run_id": context.run_id,
            "conversation_id": context.conversation_id,
        }))
