"""Custom exception hierarchy for the assistant core."""

from errors.exceptions import (
    AssistantError,
    ConfigurationError,
    DuplicateConversationError,
    PersistenceError,
    RunFailure,
    ToolError,
    ToolExecutionError,
    TransientProviderError,
    UnsafeQueryError,
    ValidationError,
    WorkflowNotFoundError,
)

__all__ = [
    "AssistantError",
    "ConfigurationError",
    "DuplicateConversationError",
    "PersistenceError",
    "RunFailure",
    "ToolError",
    "ToolExecutionError",
    "TransientProviderError",
    "UnsafeQueryError",
    "ValidationError",
    "WorkflowNotFoundError",
]
