"""Helpers for the read-only /health and /sessions payloads."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from mcpgate.proxy.registry import SessionRegistry


def health_response(
    *,
    registry: SessionRegistry,
    authenticated: bool,
    version: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Build response payload for /health."""
    now = now or datetime.now(timezone.utc)
    sessions = [
        {"key": registry.logical_id(key), **session.get_stats().to_dict()}
        for key, session in registry.items()
    ]
    return {
        "status": "ok",
        "mode": "stdio",
        "activeSessions": len(registry),
        "sessions": sessions,
        "timestamp": now.isoformat(),
        "authenticated": authenticated,
        "version": version,
    }


def list_sessions_response(*, registry: SessionRegistry) -> dict[str, Any]:
    """Build response payload for /sessions (full keys, no health wrapper)."""
    return {
        "sessions": [
            {"key": key, **session.get_stats().to_dict()}
            for key, session in registry.items()
        ]
    }
