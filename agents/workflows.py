"""Workflow orchestration: multi-step agent/tool compositions.

Four patterns:

- ``sequential``: one step at a time; fail-fast unless the step has ``on_error``
- ``parallel``: every step concurrently, failures isolated per step
- ``orchestrator``: step 0 plans, steps 1..N run as a parallel batch
- ``evaluator-optimizer``: generator/evaluator loop, at most 5 iterations

A step failure is always recorded in ``WorkflowResult.errors``; no pattern
raises because one step failed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Protocol

from agents.registry import AgentRegistry
from errors.exceptions import (
    ConfigurationError,
    RunFailure,
    ToolExecutionError,
    WorkflowNotFoundError,
)
from models.agent import AgentCallOptions, RunStatus
from models.workflow import WorkflowConfig, WorkflowContext, WorkflowResult, WorkflowStep
from tools.registry import ToolContext, ToolExecutionGateway

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 5

_SKIPPED = object()


class StepRunner(Protocol):
    async def run(self, step: WorkflowStep, context: WorkflowContext, payload: Any = None) -> Any: ...


def _parse_output(text: str) -> Any:
    """Agent text → JSON value when it is a JSON object/array, else the text."""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`").removeprefix("json").strip()
    if stripped[:1] in ("{", "["):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return text
    return text


class StepExecutor:
    """Run a step through a named agent (prompt = input) or a gateway tool."""

    def __init__(self, agents: AgentRegistry, gateway: ToolExecutionGateway):
        self._agents = agents
        self._gateway = gateway

    async def run(self, step: WorkflowStep, context: WorkflowContext, payload: Any = None) -> Any:
        payload = step.input if payload is None else payload
        if step.agent:
            return await self._run_agent(step, context, payload)
        if step.tool:
            return await self._run_tool(step, context, payload)
        raise ConfigurationError(f"Step {step.id} has no agent or tool")

    async def _run_agent(self, step: WorkflowStep, context: WorkflowContext, payload: Any) -> Any:
        runtime = self._agents.require(step.agent)
        prompt = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False, default=str)
        options = AgentCallOptions(
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            school_id=context.school_id,
            response_mode=context.data.get("response_mode", "fast"),
        )
        result = await runtime.generate(prompt, options)
        if result.status == RunStatus.FAILED:
            detail = result.error.message if result.error else "agent run failed"
            raise RunFailure(f"Agent '{step.agent}' failed: {detail}")
        if result.status == RunStatus.PENDING_APPROVAL:
            raise RunFailure(f"Agent '{step.agent}' needs tool approval, unsupported in workflows")
        return _parse_output(result.text)

    async def _run_tool(self, step: WorkflowStep, context: WorkflowContext, payload: Any) -> Any:
        tool_context = ToolContext(
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            school_id=context.school_id,
            response_mode=context.data.get("response_mode", "fast"),
        )
        invocation = await self._gateway.invoke(step.tool, payload or {}, tool_context)
        if invocation.status == "approval_required":
            raise ToolExecutionError(step.tool, "requires approval, unsupported in workflows")
        if invocation.is_error:
            raise ToolExecutionError(step.tool, invocation.error or "failed")
        return invocation.output


def _is_satisfactory(evaluation: Any) -> bool:
    if isinstance(evaluation, dict):
        return bool(evaluation.get("satisfactory"))
    return bool(getattr(evaluation, "satisfactory", False))


class WorkflowOrchestrator:
    """Execute :class:`WorkflowConfig` objects with a :class:`StepRunner`."""

    def __init__(self, executor: StepRunner):
        self._executor = executor

    async def execute(self, config: WorkflowConfig, context: WorkflowContext) -> WorkflowResult:
        patterns = {
            "sequential": self.sequential,
            "parallel": self.parallel,
            "orchestrator": self.orchestrator,
            "evaluator-optimizer": self.evaluator_optimizer,
        }
        handler = patterns.get(config.pattern)
        if handler is None:
            raise ConfigurationError(f"Unknown workflow pattern: {config.pattern}")

        logger.debug("Executing workflow %s (%s)", config.name, config.pattern)
        start = time.monotonic()
        result = await handler(config, context)
        result.execution_time_ms = (time.monotonic() - start) * 1000
        logger.info(json.dumps({
            "event": "workflow_end",
            "workflow_id": config.id,
            "pattern": config.pattern,
            "success": result.success,
            "steps_ok": sorted(result.results),
            "steps_failed": sorted(result.errors),
            "execution_time_ms": round(result.execution_time_ms, 1),
        }))
        return result

    # ── Patterns ────────────────────────────────────────────

    async def sequential(self, config: WorkflowConfig, context: WorkflowContext) -> WorkflowResult:
        results: dict[str, Any] = {}
        errors: dict[str, Exception] = {}
        for step in config.steps:
            outcome = await self._run_step(step, context)
            if outcome is _SKIPPED:
                continue
            if isinstance(outcome, Exception):
                errors[step.id] = outcome
                if step.on_error is None:
                    logger.info("Workflow %s halted at step %s", config.id, step.id)
                    break
                continue
            results[step.id] = outcome
        return WorkflowResult(success=not errors, results=results, errors=errors)

    async def parallel(self, config: WorkflowConfig, context: WorkflowContext) -> WorkflowResult:
        return await self._batch(config.steps, context)

    async def orchestrator(self, config: WorkflowConfig, context: WorkflowContext) -> WorkflowResult:
        if not config.steps:
            return self._invalid(config, "Orchestrator workflow requires at least one step")

        lead = config.steps[0]
        plan = await self._run_step(lead, context, honour_condition=False)
        if isinstance(plan, Exception):
            return WorkflowResult(success=False, errors={lead.id: plan})

        batch = await self._batch(config.steps[1:], context)
        batch.results = {lead.id: plan, **batch.results}
        return batch

    async def evaluator_optimizer(
        self, config: WorkflowConfig, context: WorkflowContext
    ) -> WorkflowResult:
        if not config.steps:
            return self._invalid(config, "Evaluator-optimizer workflow requires at least one step")

        generator = config.steps[0]
        evaluator = config.steps[1] if len(config.steps) > 1 else None
        results: dict[str, Any] = {}
        errors: dict[str, Exception] = {}
        current: Any = None
        evaluation: Any = None

        for iteration in range(1, MAX_ITERATIONS + 1):
            payload = generator.input
            if iteration > 1:
                payload = {"input": generator.input, "previous": current, "feedback": evaluation}
            try:
                current = await self._executor.run(generator, context, payload)
            except Exception as exc:
                errors[generator.id] = exc
                break
            results[f"{generator.id}_iteration_{iteration}"] = current

            if evaluator is None:
                break
            try:
                evaluation = await self._executor.run(
                    evaluator, context, {"input": evaluator.input, "current_result": current}
                )
            except Exception as exc:
                errors[evaluator.id] = exc
                break
            results[f"{evaluator.id}_iteration_{iteration}"] = evaluation
            if _is_satisfactory(evaluation):
                logger.debug("Workflow %s satisfied after %d iteration(s)", config.id, iteration)
                break

        if current is not None:
            results[generator.id] = current
            context.results[generator.id] = current
        return WorkflowResult(success=not errors, results=results, errors=errors)

    # ── Helpers ─────────────────────────────────────────────

    async def _run_step(
        self, step: WorkflowStep, context: WorkflowContext, honour_condition: bool = True
    ) -> Any:
        """Run one step; returns its result, the exception it raised, or ``_SKIPPED``.

        Failures of the condition, the step itself or ``on_success`` are all
        recorded as the step's error.
        """
        try:
            if honour_condition and step.condition is not None and not step.condition(context):
                logger.debug("Skipping step %s: condition not met", step.id)
                return _SKIPPED
            result = await self._executor.run(step, context)
            if step.on_success is not None:
                step.on_success(result, context)
        except Exception as exc:
            logger.warning("Workflow step %s failed: %s", step.id, exc)
            context.errors[step.id] = exc
            if step.on_error is not None:
                try:
                    step.on_error(exc, context)
                except Exception:
                    logger.exception("on_error handler of step %s raised", step.id)
            return exc
        context.results[step.id] = result
        return result

    async def _batch(self, steps: list[WorkflowStep], context: WorkflowContext) -> WorkflowResult:
        outcomes = await asyncio.gather(*(self._run_step(step, context) for step in steps))
        results: dict[str, Any] = {}
        errors: dict[str, Exception] = {}
        for step, outcome in zip(steps, outcomes):
            if outcome is _SKIPPED:
                continue
            if isinstance(outcome, Exception):
                errors[step.id] = outcome
            else:
                results[step.id] = outcome
        return WorkflowResult(success=not errors, results=results, errors=errors)

    @staticmethod
    def _invalid(config: WorkflowConfig, message: str) -> WorkflowResult:
        return WorkflowResult(success=False, errors={config.id: ConfigurationError(message)})


class WorkflowService:
    """Registry of workflow configurations by id."""

    def __init__(self, orchestrator: WorkflowOrchestrator):
        self._orchestrator = orchestrator
        self._workflows: dict[str, WorkflowConfig] = {}

    def register(self, config: WorkflowConfig) -> None:
        if config.id in self._workflows:
            logger.warning("Workflow %s already registered, overwriting", config.id)
        self._workflows[config.id] = config

    def get(self, workflow_id: str) -> WorkflowConfig:
        config = self._workflows.get(workflow_id)
        if config is None:
            raise WorkflowNotFoundError(workflow_id)
        return config

    def list_ids(self) -> list[str]:
        return list(self._workflows.keys())

    async def run_workflow(self, workflow_id: str, context: WorkflowContext) -> WorkflowResult:
        return await self._orchestrator.execute(self.get(workflow_id), context)
