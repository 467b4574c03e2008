"""HTTP helpers for CLI commands that talk to a running proxy."""

from __future__ import annotations

from typing import Any

import httpx

from mcpgate.cli.shared.network_utils import base_url
from mcpgate.config.schema import Config


def get_proxy_base_url(config: Config) -> str:
    """Build the proxy base URL from config."""
    return base_url(config.server.host, config.server.port)


def http_json(
    method: str,
    url: str,
    payload: dict[str, Any] | None = None,
    timeout: float = 5.0,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Send an HTTP request and parse the JSON response."""
    req_headers = {"Accept": "application/json"}
    if headers:
        req_headers.update(headers)
    try:
        response = httpx.request(method.upper(), url, json=payload, headers=req_headers, timeout=timeout)
    except httpx.TransportError as exc:
        raise RuntimeError(f"Proxy unavailable: {exc}") from exc
    if response.is_error:
        detail: Any = response.text
        try:
            detail = response.json()
        except ValueError:
            pass
        raise RuntimeError(f"{response.status_code} {response.reason_phrase}: {detail}")
    return response.json() if response.content else {}
