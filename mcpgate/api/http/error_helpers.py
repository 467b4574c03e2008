"""Shared helpers for consistent HTTP error mapping and JSON-RPC error bodies."""

from __future__ import annotations

from typing import Any

from mcpgate.proxy.protocol import SERVER_ERROR, make_error_response
from mcpgate.utils.exceptions import (
    ErrorCategory,
    McpGateError,
    NotInitializedError,
    classify_exception,
    sanitize_error_message,
)

_CATEGORY_TO_STATUS = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.PERMISSION: 403,
    ErrorCategory.TIMEOUT: 504,
    ErrorCategory.RETRYABLE: 503,
    ErrorCategory.RECOVERABLE: 500,
    ErrorCategory.FATAL: 500,
}


def classify_http_status(exc: BaseException) -> int:
    """Map exception to appropriate HTTP status code."""
    _, category, _ = classify_exception(exc)
    return _CATEGORY_TO_STATUS.get(category, 500)


def unknown_error_detail(exc: BaseException | None) -> str:
    """Format generic unknown-error detail consistently across endpoints."""
    return sanitize_error_message(str(exc)) if exc else "Unknown error"


def proxy_error_message(exc: BaseException) -> str:
    """Client-facing message for a failed proxied call."""
    if isinstance(exc, NotInitializedError) or "not initialized" in str(exc).lower():
        return "Bad Request: Server not initialized"
    if isinstance(exc, McpGateError):
        return sanitize_error_message(exc.message)
    return f"Internal error: {unknown_error_detail(exc)}"


def jsonrpc_error_payload(
    exc: BaseException,
    request_id: Any = None,
    *,
    code: int = SERVER_ERROR,
) -> tuple[int, dict[str, Any]]:
    """Return (http_status, JSON-RPC error envelope) for an exception."""
    return classify_http_status(exc), make_error_response(code, proxy_error_message(exc), request_id)
