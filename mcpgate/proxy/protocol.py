"""JSON-RPC 2.0 message helpers for the MCP wire format.

Payloads (params, result) are opaque dicts; the proxy only routes on
``method`` and ``id``.
"""

from __future__ import annotations

from typing import Any

JSONRPC_VERSION = "2.0"
NOTIFICATION_PREFIX = "notifications/"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000
UNAUTHORIZED = -32001

Message = dict[str, Any]

KNOWN_METHODS = frozenset(
    {
        "initialize",
        "ping",
        "tools/list",
        "tools/call",
        "resources/list",
        "resources/read",
        "resources/subscribe",
        "resources/unsubscribe",
        "resources/templates/list",
        "prompts/list",
        "prompts/get",
        "completion/complete",
        "logging/setLevel",
        "notifications/initialized",
        "notifications/cancelled",
        "notifications/progress",
        "notifications/message",
        "notifications/roots/list_changed",
    }
)


def is_notification_method(method: Any) -> bool:
    return isinstance(method, str) and method.startswith(NOTIFICATION_PREFIX)


def is_routable_method(method: str) -> bool:
    """Known MCP methods and any namespaced (``a/b``) method reach the child."""
    return method in KNOWN_METHODS or "/" in method


def make_request(request_id: int | str, method: str, params: Any = None) -> Message:
    message: Message = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: Any = None) -> Message:
    return {"jsonrpc": JSONRPC_VERSION, "method": method, "params": params if params is not None else {}}


def make_error_response(code: int, message: str, request_id: Any = None) -> Message:
    return {"jsonrpc": JSONRPC_VERSION, "error": {"code": code, "message": message}, "id": request_id}


def make_result_response(result: Any, request_id: Any = None) -> Message:
    return {"jsonrpc": JSONRPC_VERSION, "result": result, "id": request_id}


def is_well_formed(message: Message) -> bool:
    """A message carries either a method or a result/error, never neither."""
    return "method" in message or "result" in message or "error" in message
