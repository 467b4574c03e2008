"""Utility functions for mcpgate."""

from mcpgate.utils.exceptions import (
    McpGateError,
    CommandError,
    SpawnError,
    SessionError,
    ProcessUnavailableError,
    NotInitializedError,
    InitializationError,
    RequestTimeoutError,
    ErrorCategory,
    classify_exception,
    sanitize_error_message,
)

__all__ = [
    "McpGateError",
    "CommandError",
    "SpawnError",
    "SessionError",
    "ProcessUnavailableError",
    "NotInitializedError",
    "InitializationError",
    "RequestTimeoutError",
    "ErrorCategory",
    "classify_exception",
    "sanitize_error_message",
]
