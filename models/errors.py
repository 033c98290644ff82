"""Structured error codes for user-visible failures.

Failed runs and stream ``error`` events carry one of these codes plus a
short, non-leaking message.  Raw provider payloads and stack traces stay in
the logs.

Stream errors follow the format::

    {ERROR_CODE}: {human_readable_detail}
"""

from __future__ import annotations

import asyncio
from enum import Enum

from errors.exceptions import (
    ConfigurationError,
    PersistenceError,
    RunFailure,
    ToolError,
    TransientProviderError,
)


class ErrorCode(str, Enum):
    """Frozen error categories exposed to callers."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    LLM_PROVIDER_ERROR = "LLM_PROVIDER_ERROR"
    RUN_TIMEOUT = "RUN_TIMEOUT"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_SAFE_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.CONFIGURATION_ERROR: "The assistant is not configured for this request.",
    ErrorCode.PROVIDER_UNAVAILABLE: "The selected model provider is not available.",
    ErrorCode.LLM_PROVIDER_ERROR: "The model provider failed to respond. Please try again.",
    ErrorCode.RUN_TIMEOUT: "The assistant took too long to respond.",
    ErrorCode.TOOL_EXECUTION_FAILED: "A tool failed while preparing the answer.",
    ErrorCode.PERSISTENCE_ERROR: "The conversation could not be saved.",
    ErrorCode.INTERNAL_ERROR: "Something went wrong while generating the answer.",
}


def format_error(code: ErrorCode, detail: str) -> str:
    """Format an error for SSE ``errorText``.

    Returns:
        ``{ERROR_CODE}: {detail}``
    """
    return f"{code.value}: {detail}"


def safe_message(code: ErrorCode) -> str:
    """Return the user-facing message for *code*."""
    return _SAFE_MESSAGES[code]


def classify_exception(exc: BaseException) -> tuple[ErrorCode, str]:
    """Map an exception to ``(code, user-facing message)``.

    Configuration errors keep their own message because it names the missing
    model or provider, which is safe and actionable.  Everything else gets
    the frozen category message.
    """
    if isinstance(exc, ConfigurationError):
        text = str(exc)
        if "not available" in text:
            return ErrorCode.PROVIDER_UNAVAILABLE, text
        return ErrorCode.CONFIGURATION_ERROR, text
    if isinstance(exc, RunFailure):
        if exc.timed_out:
            return ErrorCode.RUN_TIMEOUT, safe_message(ErrorCode.RUN_TIMEOUT)
        return ErrorCode.LLM_PROVIDER_ERROR, safe_message(ErrorCode.LLM_PROVIDER_ERROR)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCode.RUN_TIMEOUT, safe_message(ErrorCode.RUN_TIMEOUT)
    if isinstance(exc, TransientProviderError):
        return ErrorCode.LLM_PROVIDER_ERROR, safe_message(ErrorCode.LLM_PROVIDER_ERROR)
    if isinstance(exc, ToolError):
        return ErrorCode.TOOL_EXECUTION_FAILED, safe_message(ErrorCode.TOOL_EXECUTION_FAILED)
    if isinstance(exc, PersistenceError):
        return ErrorCode.PERSISTENCE_ERROR, safe_message(ErrorCode.PERSISTENCE_ERROR)
    return ErrorCode.INTERNAL_ERROR, safe_message(ErrorCode.INTERNAL_ERROR)
