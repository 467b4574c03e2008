"""Protocol policy for the /mcp and /debug/mcp endpoints.

Transport-free: handlers receive the decoded body plus request metadata and
return ``(http_status, json_payload)``. Every payload is a JSON-RPC envelope
carrying the caller's id.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping

from loguru import logger

from mcpgate.api.http.error_helpers import jsonrpc_error_payload, unknown_error_detail
from mcpgate.proxy.protocol import (
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    SERVER_ERROR,
    UNAUTHORIZED,
    is_notification_method,
    is_routable_method,
    make_error_response,
    make_result_response,
)
from mcpgate.proxy.registry import SessionRegistry, make_session_key
from mcpgate.utils.exceptions import McpGateError

SESSION_HEADER = "x-session-id"
API_KEY_HEADER = "x-api-key"
SESSION_QUERY_PARAM = "session"

HttpResult = tuple[int, dict[str, Any]]


@dataclass(frozen=True)
class McpRequestContext:
    """Who is calling: logical session id plus (optional) credential."""

    session_id: str
    api_key: str | None = None

    @property
    def session_key(self) -> str:
        return make_session_key(self.session_id, self.api_key)

    @property
    def authenticated(self) -> bool:
        return bool(self.api_key)


def build_request_context(
    *,
    headers: Mapping[str, str],
    query: Mapping[str, str],
    default_session_id: str = "default",
) -> McpRequestContext:
    """Session id from header, then query string, then the configured default."""
    session_id = headers.get(SESSION_HEADER) or query.get(SESSION_QUERY_PARAM) or default_session_id
    api_key = headers.get(API_KEY_HEADER) or None
    return McpRequestContext(session_id=session_id, api_key=api_key)


def missing_credential_result(request_id: Any = None) -> HttpResult:
    return 401, make_error_response(UNAUTHORIZED, f"Unauthorized: missing {API_KEY_HEADER} header", request_id)


async def dispatch_mcp_request(
    *,
    registry: SessionRegistry,
    context: McpRequestContext,
    body: Any,
    short_circuit_notifications: bool = True,
) -> HttpResult:
    """
    Route one JSON-RPC request to its session.

    - ``notifications/*`` are acknowledged without reaching the child when
      ``short_circuit_notifications`` is set, otherwise forwarded one-way.
    - ``initialize`` goes through the session's one-time handshake.
    - Known or namespaced methods are proxied; anything else is -32601.
    """
    if not isinstance(body, dict):
        return 400, make_error_response(INVALID_REQUEST, "Bad Request: body must be a JSON-RPC object")

    request_id = body.get("id")
    method = body.get("method")
    params = body.get("params", {})
    if not method or not isinstance(method, str):
        return 400, make_error_response(INVALID_REQUEST, "Bad Request: Missing method", request_id)

    try:
        session = await registry.get_or_create(context.session_key, logical_id=context.session_id)
    except Exception as exc:
        logger.error("Failed to create session: {}", exc)
        return 500, make_error_response(
            SERVER_ERROR,
            f"Failed to create session: {unknown_error_detail(exc)}",
            request_id,
        )

    started = time.perf_counter()
    logger.info("Processing {}{}", method, f" (id: {request_id})" if request_id is not None else "")

    if is_notification_method(method):
        if not short_circuit_notifications:
            session.send_notification(method, params)
        return 200, make_result_response({}, request_id)

    try:
        if method == "initialize":
            response = await session.initialize(params)
        elif is_routable_method(method):
            response = await session.call_method(method, params)
        else:
            return 200, make_error_response(METHOD_NOT_FOUND, f"Method not found: {method}", request_id)
    except McpGateError as exc:
        logger.error("Request {} failed in {:.0f}ms: {}", method, _elapsed_ms(started), exc.message)
        return jsonrpc_error_payload(exc, request_id)
    except Exception as exc:
        logger.exception("Request {} failed in {:.0f}ms", method, _elapsed_ms(started))
        return jsonrpc_error_payload(exc, request_id)

    logger.info("{} completed in {:.0f}ms", method, _elapsed_ms(started))
    return 200, {**response, "id": request_id}


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
