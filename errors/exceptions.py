"""Domain-specific exceptions for the assistant core.

These exceptions let the runtime, the streaming pipeline and the memory
store distinguish between failure modes: configuration errors fail a run
immediately, tool errors are downgraded to model-visible tool results,
transient provider errors are retried, and persistence errors are logged
without touching a stream the client already received.
"""

from __future__ import annotations


class AssistantError(Exception):
    """Base class for every error raised by the assistant core."""


class ConfigurationError(AssistantError):
    """A model, provider or call option is missing or invalid.

    Fatal for the current run and never retried.
    """


class ToolError(AssistantError):
    """Base class for tool errors surfaced to the model as tool results."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        self.detail = message
        super().__init__(f"Tool '{tool_name}' failed: {message}")


class ValidationError(ToolError):
    """Tool input did not match the tool's input schema or preconditions."""

    def __init__(self, tool_name: str, message: str, errors: list[dict] | None = None) -> None:
        self.errors = errors or []
        super().__init__(tool_name, message)


class UnsafeQueryError(ValidationError):
    """A query-like tool received input that is not a read-only query."""

    def __init__(self, tool_name: str, message: str, keyword: str = "") -> None:
        self.keyword = keyword
        super().__init__(tool_name, message)


class ToolExecutionError(ToolError):
    """The tool's own logic raised while executing."""


class TransientProviderError(AssistantError):
    """Network, rate-limit or 5xx failure from a model provider.

    Retried at the provider-call boundary up to the configured budget.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RunFailure(AssistantError):
    """An agent run could not complete (retries exhausted or timed out)."""

    def __init__(self, message: str, *, timed_out: bool = False, attempts: int = 0) -> None:
        self.timed_out = timed_out
        self.attempts = attempts
        super().__init__(message)


class PersistenceError(AssistantError):
    """Reading or writing a conversation document failed."""


class DuplicateConversationError(PersistenceError):
    """Insert hit a uniqueness violation: the conversation already exists."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' already exists")


class WorkflowNotFoundError(AssistantError):
    """No workflow is registered under the requested id."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' not found")
