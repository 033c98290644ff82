"""Workflow configuration, context and result types.

Steps carry plain callables (conditions and callbacks), so these are
dataclasses rather than pydantic models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal

WorkflowPattern = Literal["sequential", "parallel", "orchestrator", "evaluator-optimizer"]


@dataclass
class WorkflowContext:
    """Shared, mutable state of one workflow execution."""

    tenant_id: str
    user_id: str
    school_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)


@dataclass
class WorkflowStep:
    id: str
    name: str = ""
    agent: str | None = None
    tool: str | None = None
    input: Any = None
    # Skip the step when this returns False.
    condition: Callable[[WorkflowContext], bool] | None = None
    on_success: Callable[[Any, WorkflowContext], None] | None = None
    # When set, a failure is recorded and the workflow continues.
    on_error: Callable[[Exception, WorkflowContext], None] | None = None


@dataclass
class WorkflowConfig:
    id: str
    name: str
    pattern: WorkflowPattern
    steps: list[WorkflowStep] = field(default_factory=list)
    description: str = ""


@dataclass
class WorkflowResult:
    success: bool
    results: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    execution_time_ms: float = 0.0

    def error_messages(self) -> dict[str, str]:
        return {step_id: str(exc) for step_id, exc in self.errors.items()}
