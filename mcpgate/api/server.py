"""FastAPI server exposing stdio MCP sessions over HTTP.

The app owns one SessionRegistry (``app.state.registry``), created by
``create_app`` and torn down in the lifespan shutdown hook. ``ProxyServer``
also tears it down as soon as SIGINT/SIGTERM arrives, so in-flight calls
fail fast instead of holding up uvicorn's graceful shutdown, and a second
Ctrl+C (which skips the lifespan) still leaves no children behind.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from loguru import logger

from mcpgate import __version__
from mcpgate.api.http.error_helpers import jsonrpc_error_payload
from mcpgate.api.http.mcp_methods import (
    API_KEY_HEADER,
    SESSION_HEADER,
    build_request_context,
    dispatch_mcp_request,
    missing_credential_result,
)
from mcpgate.api.http.status_methods import health_response, list_sessions_response
from mcpgate.config.schema import Config
from mcpgate.proxy.protocol import INTERNAL_ERROR, PARSE_ERROR, make_error_response
from mcpgate.proxy.registry import SessionRegistry, SpawnSpec
from mcpgate.utils.exceptions import McpGateError, classify_exception, sanitize_error_message

_ALLOWED_METHODS = "GET, POST, OPTIONS, PUT, DELETE, PATCH"
_ALLOWED_HEADERS = f"Content-Type, Accept, {SESSION_HEADER}, {API_KEY_HEADER}, Cache-Control, Pragma"


async def _read_json_body(request: Request) -> tuple[Any, dict[str, Any] | None]:
    """Return (body, error_payload); an empty body decodes to {}."""
    raw = await request.body()
    if not raw.strip():
        return {}, None
    try:
        return json.loads(raw), None
    except ValueError as e:
        return None, make_error_response(PARSE_ERROR, f"Parse error: {e}")


class ProxyServer(uvicorn.Server):
    """uvicorn server that kills every session the moment a stop signal arrives."""

    def __init__(self, config: uvicorn.Config, registry: SessionRegistry):
        super().__init__(config)
        self.registry = registry

    def handle_exit(self, sig: int, frame) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._teardown_sessions(sig)
        else:
            # May be running inside a signal.signal handler.
            loop.call_soon_threadsafe(self._teardown_sessions, sig)
        super().handle_exit(sig, frame)

    def _teardown_sessions(self, sig: int) -> None:
        cleaned = self.registry.remove_all()
        if cleaned:
            logger.info("Signal {}: killed {} session(s)", sig, cleaned)


def create_app(
    config: Config | None = None,
    spawn_spec: SpawnSpec | None = None,
    registry: SessionRegistry | None = None,
) -> FastAPI:
    """Build the proxy app around a (new or given) session registry."""
    config = config or Config()
    if registry is None:
        registry = SessionRegistry.from_config(config, spawn_spec)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        spec = registry.spawn_spec
        logger.info("mcpgate API server started (spawn: {})", spec.binary if spec else "none")
        try:
            yield
        finally:
            sessions = [session for _, session in registry.items()]
            cleaned = registry.remove_all()
            await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)
            logger.info("mcpgate API server stopped ({} session(s) cleaned up)", cleaned)

    app = FastAPI(
        title="mcpgate",
        description="HTTP JSON-RPC front door for stdio MCP servers",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.config = config

    @app.exception_handler(McpGateError)
    async def mcpgate_exception_handler(request: Request, exc: McpGateError):
        status_code, payload = jsonrpc_error_payload(exc)
        return JSONResponse(status_code=status_code, content=payload)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        code, _, _ = classify_exception(exc)
        logger.exception("Unhandled exception [{}]: {}", code, sanitize_error_message(str(exc)))
        return JSONResponse(
            status_code=500,
            content=make_error_response(INTERNAL_ERROR, "An unexpected error occurred"),
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    async def _handle_mcp(request: Request, *, debug: bool) -> JSONResponse:
        body, parse_error = await _read_json_body(request)
        if parse_error is not None:
            return JSONResponse(status_code=400, content=parse_error)
        context = build_request_context(
            headers=request.headers,
            query=request.query_params,
            default_session_id=config.sessions.default_session_id,
        )
        if config.sessions.require_api_key and not context.authenticated:
            request_id = body.get("id") if isinstance(body, dict) else None
            status_code, payload = missing_credential_result(request_id)
            return JSONResponse(status_code=status_code, content=payload)
        short_circuit = not debug and not config.sessions.forward_notifications
        status_code, payload = await dispatch_mcp_request(
            registry=registry,
            context=context,
            body=body,
            short_circuit_notifications=short_circuit,
        )
        return JSONResponse(status_code=status_code, content=payload)

    @app.api_route("/mcp", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
    async def mcp_endpoint(request: Request):
        """Proxy one JSON-RPC request to the caller's session."""
        return await _handle_mcp(request, debug=False)

    @app.post("/debug/mcp")
    async def debug_mcp_endpoint(request: Request):
        """Same dispatch as /mcp, but notifications are forwarded to the child."""
        return await _handle_mcp(request, debug=True)

    @app.get("/health")
    async def health(request: Request):
        """Aggregate status plus per-session stats."""
        return health_response(
            registry=registry,
            authenticated=bool(request.headers.get(API_KEY_HEADER)),
            version=__version__,
        )

    @app.get("/sessions")
    async def sessions():
        """Raw listing of session keys and stats."""
        return list_sessions_response(registry=registry)

    @app.options("/{path:path}")
    async def preflight(request: Request, path: str):
        """Permissive answer for OPTIONS requests the CORS middleware does not intercept."""
        return Response(
            status_code=200,
            headers={
                "Access-Control-Allow-Origin": request.headers.get("origin") or "*",
                "Access-Control-Allow-Methods": _ALLOWED_METHODS,
                "Access-Control-Allow-Headers": _ALLOWED_HEADERS,
                "Access-Control-Allow-Credentials": "true",
            },
        )

    return app
