"""One MCP conversation with one stdio child process.

Lifecycle: CREATED -> STARTING -> RUNNING (uninitialized -> initialized) -> TERMINATED.

The session owns the child, a line framer per output stream, and the
pending-call table. Requests are written to the child's stdin in call
order; responses are matched back by id because the child may answer out
of order. Everything runs on the event loop, so no locks are involved.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from mcpgate.config.schema import TimeoutConfig
from mcpgate.proxy.framing import LineFramer, LineKind, classify_line
from mcpgate.proxy.pending import PendingCallRegistry, timeout_for_method
from mcpgate.proxy.protocol import Message, is_notification_method, make_notification, make_request
from mcpgate.utils.exceptions import (
    CommandError,
    InitializationError,
    McpGateError,
    NotInitializedError,
    ProcessUnavailableError,
    RequestTimeoutError,
    SessionError,
    SpawnError,
)

_READ_CHUNK = 64 * 1024
_DRAIN_ON_EXIT_SECONDS = 1.0
_EXIT_POLL_SECONDS = 0.2
_POSIX = sys.platform != "win32"


class SessionState(Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class SessionStats:
    id: str
    pid: int | None
    uptime_seconds: float
    message_count: int
    initialized: bool
    alive: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pid": self.pid,
            "uptimeSeconds": self.uptime_seconds,
            "messageCount": self.message_count,
            "initialized": self.initialized,
            "alive": self.alive,
        }


def _settle(future: asyncio.Future, *, result: Any = None, exc: BaseException | None = None) -> None:
    if future.done():
        return
    if exc is not None:
        future.set_exception(exc)
    else:
        future.set_result(result)


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """SIGKILL the child and everything it spawned (shell-wrapped commands fork)."""
    try:
        if _POSIX:
            os.killpg(process.pid, signal.SIGKILL)
        elif process.returncode is None:
            process.kill()
    except (ProcessLookupError, PermissionError):
        pass


class McpSession:
    """A stateful stdio MCP server behind a request/response facade."""

    def __init__(
        self,
        *,
        timeouts: TimeoutConfig | None = None,
        color: bool = True,
        extra_env: dict[str, str] | None = None,
        send_initialized_notification: bool = True,
    ):
        self.id = str(uuid.uuid4())
        self.state = SessionState.CREATED
        self.initialized = False
        self.process: asyncio.subprocess.Process | None = None
        self.init_response: Message | None = None
        self.start_time = time.monotonic()
        self.message_count = 0
        self.exit_code: int | None = None
        self.timeouts = timeouts or TimeoutConfig()
        self.color = color
        self.extra_env = dict(extra_env or {})
        self.send_initialized_notification = send_initialized_notification
        self._next_id = 1
        self._killed = False
        self._pending = PendingCallRegistry()
        self._init_future: asyncio.Future | None = None
        self._framers = {"stdout": LineFramer("stdout"), "stderr": LineFramer("stderr")}
        self._readers: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def pending(self) -> PendingCallRegistry:
        return self._pending

    @property
    def alive(self) -> bool:
        return self.process is not None and not self._killed and self.process.returncode is None

    @property
    def terminated(self) -> bool:
        return self.state is SessionState.TERMINATED

    def allocate_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.extra_env)
        env["FORCE_COLOR"] = "1" if self.color else "0"
        return env

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def start(self, binary: str, arguments: list[str] | None = None) -> None:
        """Spawn the child and attach stream readers plus an exit watcher."""
        if self.state is not SessionState.CREATED:
            raise SessionError(self.id, f"Session {self.short_id} was already started")
        if not binary:
            raise CommandError("Command is required: nothing to spawn", command="")
        arguments = list(arguments or [])
        self.state = SessionState.STARTING
        logger.info("Starting MCP process: {} {}", binary, " ".join(arguments))
        try:
            self.process = await asyncio.create_subprocess_exec(
                binary,
                *arguments,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                start_new_session=_POSIX,
            )
        except OSError as e:
            self.state = SessionState.TERMINATED
            logger.error("Failed to start process {}: {}", binary, e)
            raise SpawnError(binary, str(e)) from e

        self.state = SessionState.RUNNING
        self._readers = [
            asyncio.create_task(self._read_stream(self.process.stdout, "stdout")),
            asyncio.create_task(self._read_stream(self.process.stderr, "stderr")),
        ]
        self._watcher = asyncio.create_task(self._watch_exit())
        logger.info("Session {} started process PID {}", self.short_id, self.process.pid)

    async def _read_stream(self, stream: asyncio.StreamReader | None, source: str) -> None:
        if stream is None:
            return
        framer = self._framers[source]
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            for line in framer.feed(chunk):
                try:
                    self._on_line(line, source)
                except Exception:
                    logger.exception("Session {}: failed to handle {} line", self.short_id, source)

    def _on_line(self, line: str, source: str) -> None:
        decoded = classify_line(line)
        if decoded.kind is LineKind.TEXT:
            if decoded.looks_like_error:
                logger.warning("Server ({}) error output: {}", source, line)
            else:
                logger.debug("Server ({}): {}", source, line)
            return

        for message in decoded.messages:
            self.message_count += 1
            method = message.get("method")
            if is_notification_method(method):
                logger.info("Server notification: {}", method)
                continue
            if method is not None:
                logger.warning(
                    "Session {}: ignoring server-initiated request {} (id={!r})",
                    self.short_id,
                    method,
                    message.get("id"),
                )
                continue
            logger.debug("Received from {}: {}", source, line)
            self.handle_response(message)

    def handle_response(self, response: Message) -> None:
        """Resolve the pending call matching ``response['id']``; drop orphans."""
        request_id = response.get("id")
        if request_id is not None and self._pending.resolve(request_id, response):
            logger.debug("Delivered response for id {!r}", request_id)
            return
        logger.warning(
            "Session {}: no pending call for response id {!r} (pending: {})",
            self.short_id,
            request_id,
            self._pending.ids(),
        )

    async def _watch_exit(self) -> None:
        assert self.process is not None
        process = self.process
        wait_task = asyncio.ensure_future(process.wait())
        try:
            while True:
                done, _ = await asyncio.wait({wait_task}, timeout=_EXIT_POLL_SECONDS)
                if done:
                    code = wait_task.result()
                    break
                if process.returncode is not None:
                    # Reaped, but descendants still hold the pipes open.
                    _kill_process_group(process)
                    code = process.returncode
                    break
        finally:
            wait_task.cancel()
        self.exit_code = code
        # Let readers consume what the child wrote before exiting.
        readers = [t for t in self._readers if not t.done()]
        if readers:
            await asyncio.wait(readers, timeout=_DRAIN_ON_EXIT_SECONDS)
        for source, framer in self._framers.items():
            leftover = framer.flush().strip()
            if leftover:
                logger.error("Last {} output from PID {}:\n{}", source, self.process.pid, leftover)

        uptime = time.monotonic() - self.start_time
        if code == 0:
            logger.info(
                "Process {} exited normally (uptime: {:.1f}s, messages: {})",
                self.process.pid,
                uptime,
                self.message_count,
            )
        elif self._killed:
            logger.info("Process {} stopped (code {}, uptime: {:.1f}s)", self.process.pid, code, uptime)
        else:
            logger.error("Process {} exited with code {} (uptime: {:.1f}s)", self.process.pid, code, uptime)
        self.cleanup()

    def cleanup(self) -> None:
        """Kill the child if needed, abandon pending calls and reset handshake state."""
        process = self.process
        if process is not None and not self._killed:
            self._killed = True
            _kill_process_group(process)
        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()

        was_running = self.state is not SessionState.TERMINATED
        self.state = SessionState.TERMINATED
        dropped = self._pending.reject_all(ProcessUnavailableError("MCP process exited"))
        if dropped:
            logger.warning("Session {}: abandoned {} pending call(s)", self.short_id, dropped)
        self.initialized = False
        self.init_response = None
        self._init_future = None

        current = asyncio.current_task() if _loop_running() else None
        for task in self._readers:
            if task is not current and not task.done():
                task.cancel()
        if was_running:
            logger.debug("Session {} cleaned up", self.short_id)

    async def close(self, timeout: float = 5.0) -> None:
        """cleanup(), then wait for the exit watcher to reap the child."""
        self.cleanup()
        watcher = self._watcher
        if watcher is not None and not watcher.done() and watcher is not asyncio.current_task():
            await asyncio.wait({watcher}, timeout=timeout)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send(self, message: Message) -> Message:
        """Write one framed message; await the correlated response when it has an id."""
        process = self.process
        if process is None or not self.alive or process.stdin is None:
            logger.error("MCP process not available")
            raise ProcessUnavailableError()

        request_id = message.get("id")
        method = message.get("method")
        future: asyncio.Future | None = None
        if request_id is not None:
            future = asyncio.get_running_loop().create_future()
            timeout = timeout_for_method(method, self.timeouts)
            self._pending.register(
                request_id,
                resolve=lambda response: _settle(future, result=response),
                reject=lambda exc: _settle(future, exc=exc),
            )

            def _on_timeout() -> None:
                logger.error("Request timeout after {:g}s for method: {}", timeout, method)
                _settle(future, exc=RequestTimeoutError(method, timeout))

            self._pending.timeout_after(request_id, timeout, _on_timeout)

        line = json.dumps(message, ensure_ascii=False) + "\n"
        try:
            process.stdin.write(line.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            if request_id is not None:
                self._pending.discard(request_id)
            raise ProcessUnavailableError(f"MCP process not available: {e}") from e
        logger.debug("Sent: {}", line.rstrip())

        if future is None:
            return {}
        try:
            return await future
        except asyncio.CancelledError:
            self._pending.discard(request_id)
            raise

    def send_notification(self, method: str, params: Any = None) -> None:
        """Fire-and-forget; silently skipped when the child is gone."""
        process = self.process
        if process is None or not self.alive or process.stdin is None or process.stdin.is_closing():
            logger.debug("Skipping notification {}: process not available", method)
            return
        line = json.dumps(make_notification(method, params), ensure_ascii=False) + "\n"
        try:
            process.stdin.write(line.encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug("Notification {} not delivered: {}", method, e)
            return
        logger.info("Sent notification: {}", method)

    async def initialize(self, params: Any = None) -> Message:
        """Run the handshake at most once; concurrent callers share the in-flight one."""
        if self.initialized and self.init_response is not None:
            logger.debug("Session {}: using cached initialization response", self.short_id)
            return self.init_response
        if self._init_future is None:
            self._init_future = asyncio.ensure_future(self._perform_initialization(params))
        return await asyncio.shield(self._init_future)

    async def _perform_initialization(self, params: Any) -> Message:
        message = make_request(self.allocate_id(), "initialize", params if params is not None else {})
        try:
            response = await self.send(message)
        except McpGateError as e:
            self._init_future = None
            logger.error("Initialization error: {}", e.message)
            raise InitializationError(e.message) from e

        if "error" in response:
            self._init_future = None
            logger.warning("Session {}: child rejected initialize: {}", self.short_id, response["error"])
            return response

        self.initialized = True
        self.init_response = response
        if self.send_initialized_notification:
            self.send_notification("notifications/initialized")

        result = response.get("result")
        server_info = result.get("serverInfo") if isinstance(result, dict) else None
        if isinstance(server_info, dict):
            logger.info("Connected to {} v{}", server_info.get("name"), server_info.get("version"))
        logger.info("Session {} initialized", self.short_id)
        return response

    async def call_method(self, method: str, params: Any = None) -> Message:
        if method != "initialize" and not self.initialized:
            logger.error("Server not initialized (method {})", method)
            raise NotInitializedError(method)
        message = make_request(self.allocate_id(), method, params if params is not None else {})
        return await self.send(message)

    def get_stats(self) -> SessionStats:
        return SessionStats(
            id=self.short_id,
            pid=self.process.pid if self.process is not None else None,
            uptime_seconds=round(time.monotonic() - self.start_time, 1),
            message_count=self.message_count,
            initialized=self.initialized,
            alive=self.alive,
        )


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
