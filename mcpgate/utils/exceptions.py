"""
Exception hierarchy and error handling utilities for mcpgate.

Provides:
- Custom exception classes with error codes
- Error categorization (validation, retryable, timeout, fatal)
- Safe error message formatting (no credential leak into logs or HTTP bodies)
"""

from __future__ import annotations

import asyncio
import json
import re
from enum import Enum
from typing import Any


class ErrorCategory(Enum):
    """Error categories for classification."""
    RECOVERABLE = "recoverable"
    RETRYABLE = "retryable"
    FATAL = "fatal"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PERMISSION = "permission"
    TIMEOUT = "timeout"


class McpGateError(Exception):
    """Base exception for all mcpgate errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        category: ErrorCategory = ErrorCategory.FATAL,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "category": self.category.value,
            "details": self.details,
        }

    def __str__(self) -> str:
        return self.message


class CommandError(McpGateError):
    """The configured child command cannot be turned into something to spawn."""

    def __init__(self, message: str, command: str | None = None):
        super().__init__(
            message,
            code="INVALID_COMMAND",
            category=ErrorCategory.VALIDATION,
            details={"command": command} if command is not None else {},
        )


class SpawnError(McpGateError):
    """Child binary missing or not executable."""

    def __init__(self, binary: str, reason: str):
        super().__init__(
            f"Process spawn failed: {reason}",
            code="SPAWN_FAILED",
            category=ErrorCategory.FATAL,
            details={"binary": binary},
        )


class SessionError(McpGateError):
    """Session lifecycle misuse (e.g. starting a session twice)."""

    def __init__(self, session_id: str, message: str):
        super().__init__(
            message,
            code="SESSION_ERROR",
            category=ErrorCategory.FATAL,
            details={"session_id": session_id},
        )


class ProcessUnavailableError(McpGateError):
    """Send attempted against an absent or already-killed child process."""

    def __init__(self, message: str = "MCP process not available"):
        super().__init__(message, code="PROCESS_UNAVAILABLE", category=ErrorCategory.RETRYABLE)


class NotInitializedError(McpGateError):
    """A method other than initialize was called before the handshake completed."""

    def __init__(self, method: str):
        super().__init__(
            "Server not initialized",
            code="NOT_INITIALIZED",
            category=ErrorCategory.VALIDATION,
            details={"method": method},
        )


class InitializationError(McpGateError):
    """The initialize handshake failed."""

    def __init__(self, reason: str):
        super().__init__(
            f"Initialization failed: {reason}",
            code="INITIALIZATION_FAILED",
            category=ErrorCategory.FATAL,
        )


class RequestTimeoutError(McpGateError):
    """No correlated response arrived within the method's timeout tier."""

    def __init__(self, method: str | None, timeout_seconds: float):
        super().__init__(
            f"Request timeout after {timeout_seconds:g}s for method: {method}",
            code="TIMEOUT",
            category=ErrorCategory.TIMEOUT,
            details={"method": method, "timeout_seconds": timeout_seconds},
        )


_SENSITIVE_PATTERNS = [
    re.compile(r"(api[_-]?key|token|secret|password|auth)[=:]\s*['\"]?([^\s'\"]+)['\"]?", re.IGNORECASE),
    re.compile(r"bearer\s+[a-zA-Z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"sk-[a-zA-Z0-9]{20,}"),
    re.compile(r"[a-zA-Z0-9]{40,}"),
]


def sanitize_error_message(message: str, replacement: str = "[REDACTED]") -> str:
    """Remove credential-looking substrings from error messages."""
    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def classify_exception(exc: BaseException) -> tuple[str, ErrorCategory, bool]:
    """
    Classify an exception and return (error_code, category, should_retry).

    Returns:
        Tuple of (error_code, category, should_retry)
    """
    if isinstance(exc, McpGateError):
        return exc.code, exc.category, exc.category is ErrorCategory.RETRYABLE

    if isinstance(exc, FileNotFoundError):
        return "FILE_NOT_FOUND", ErrorCategory.NOT_FOUND, False

    if isinstance(exc, PermissionError):
        return "PERMISSION_DENIED", ErrorCategory.PERMISSION, False

    if isinstance(exc, asyncio.TimeoutError):
        return "TIMEOUT", ErrorCategory.TIMEOUT, True

    if isinstance(exc, (BrokenPipeError, ConnectionResetError)):
        return "PROCESS_UNAVAILABLE", ErrorCategory.RETRYABLE, True

    if isinstance(exc, ConnectionError):
        return "CONNECTION_ERROR", ErrorCategory.RETRYABLE, True

    if isinstance(exc, json.JSONDecodeError):
        return "JSON_PARSE_ERROR", ErrorCategory.VALIDATION, False

    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return "INVALID_VALUE", ErrorCategory.VALIDATION, False

    exc_str = str(exc).lower()
    if "timeout" in exc_str or "timed out" in exc_str:
        return "TIMEOUT", ErrorCategory.TIMEOUT, True

    if "not initialized" in exc_str:
        return "NOT_INITIALIZED", ErrorCategory.VALIDATION, False

    return "INTERNAL_ERROR", ErrorCategory.FATAL, False
