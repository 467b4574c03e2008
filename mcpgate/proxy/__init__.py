"""stdio MCP proxy core: command parsing, framing, correlation, sessions."""

from mcpgate.proxy.command_parser import ParsedCommand, parse_command, require_command
from mcpgate.proxy.framing import LineFramer, LineKind, classify_line
from mcpgate.proxy.pending import PendingCallRegistry, timeout_for_method
from mcpgate.proxy.registry import SessionRegistry, SpawnSpec, logical_session_id, make_session_key
from mcpgate.proxy.session import McpSession, SessionState, SessionStats

__all__ = [
    "ParsedCommand",
    "parse_command",
    "require_command",
    "LineFramer",
    "LineKind",
    "classify_line",
    "PendingCallRegistry",
    "timeout_for_method",
    "SessionRegistry",
    "SpawnSpec",
    "logical_session_id",
    "make_session_key",
    "McpSession",
    "SessionState",
    "SessionStats",
]
