"""Session tests against a real stub child process (see conftest.STUB_CHILD)."""

import asyncio
import os
import shlex
import sys
import time

import pytest

from mcpgate.config.schema import TimeoutConfig
from mcpgate.proxy.command_parser import parse_command
from mcpgate.proxy.session import McpSession, SessionState
from mcpgate.utils.exceptions import (
    CommandError,
    InitializationError,
    NotInitializedError,
    ProcessUnavailableError,
    RequestTimeoutError,
    SessionError,
    SpawnError,
)

pytestmark = pytest.mark.slow

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX-only")

# Background helper for shell commands: records its pid, then holds the
# inherited stdout/stderr pipes open.
PIPE_HOLDER = "import os, sys, time\nwith open(sys.argv[1], \"w\") as f:\n    f.write(str(os.getpid()))\ntime.sleep(30)\n"


async def _started(spec, **kwargs) -> McpSession:
    session = McpSession(**kwargs)
    await session.start(spec.binary, spec.arguments)
    return session


@pytest.mark.asyncio
async def test_initialize_then_call_method_echoes(stub_spawn):
    session = await _started(stub_spawn("echo"))
    try:
        init = await session.initialize({"protocolVersion": "2024-11-05"})
        assert init["result"]["serverInfo"]["name"] == "stub"
        assert session.initialized

        response = await session.call_method("ping", {})
        assert response == {"jsonrpc": "2.0", "id": 2, "result": {"echo": True}}
        assert len(session.pending) == 0
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_initialize_is_sent_once(stub_spawn):
    session = await _started(stub_spawn("echo"))
    try:
        first = await session.initialize({})
        second = await session.initialize({})
        assert second is first

        seen = await session.call_method("stub/seen", {})
        methods = seen["result"]["methods"]
        assert methods.count("initialize") == 1
        assert methods == ["initialize", "notifications/initialized", "stub/seen"]
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_concurrent_initialize_shares_handshake(stub_spawn):
    session = await _started(stub_spawn("echo"))
    try:
        a, b = await asyncio.gather(session.initialize({}), session.initialize({}))
        assert a == b
        seen = await session.call_method("stub/seen", {})
        assert seen["result"]["methods"].count("initialize") == 1
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_initialized_notification_can_be_disabled(stub_spawn):
    session = await _started(stub_spawn("echo"), send_initialized_notification=False)
    try:
        await session.initialize({})
        seen = await session.call_method("stub/seen", {})
        assert "notifications/initialized" not in seen["result"]["methods"]
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_unanswered_call_times_out(stub_spawn):
    timeouts = TimeoutConfig(long_seconds=0.3, medium_seconds=0.3, default_seconds=5)
    session = await _started(stub_spawn("silent"), timeouts=timeouts)
    try:
        await session.initialize({})
        with pytest.raises(RequestTimeoutError) as exc_info:
            await session.call_method("tools/call", {})
        message = exc_info.value.message
        assert "tools/call" in message
        assert "timeout" in message.lower()
        assert len(session.pending) == 0
        assert session.alive
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_notifications_create_no_pending_entries(stub_spawn):
    session = await _started(stub_spawn("echo"))
    try:
        await session.initialize({})
        for i in range(100):
            session.send_notification("notifications/progress", {"progress": i})
        assert len(session.pending) == 0
        # Still responsive after the burst.
        response = await session.call_method("ping", {})
        assert response["result"] == {"echo": True}
    finally:
        await session.close()


def test_pending_state_is_per_session():
    a = McpSession()
    b = McpSession()
    got_a, got_b = [], []
    a.pending.register(5, got_a.append)
    b.pending.register(5, got_b.append)

    a.handle_response({"jsonrpc": "2.0", "id": 5, "result": {"from": "a"}})

    assert got_a == [{"jsonrpc": "2.0", "id": 5, "result": {"from": "a"}}]
    assert got_b == []
    assert 5 in b.pending
    assert a.id != b.id


@pytest.mark.asyncio
async def test_child_exit_rejects_pending_and_terminates(stub_spawn):
    session = await _started(stub_spawn("echo"))
    try:
        await session.initialize({})
        with pytest.raises(ProcessUnavailableError):
            await session.call_method("stub/crash", {})
        await session.close()

        assert session.state is SessionState.TERMINATED
        assert session.exit_code == 1
        assert not session.initialized
        stats = session.get_stats().to_dict()
        assert stats["alive"] is False
        assert stats["initialized"] is False

        with pytest.raises(ProcessUnavailableError):
            await session.send({"jsonrpc": "2.0", "id": 99, "method": "ping"})
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_call_before_initialize_is_rejected(stub_spawn):
    session = await _started(stub_spawn("echo"))
    try:
        with pytest.raises(NotInitializedError):
            await session.call_method("tools/list", {})
        assert len(session.pending) == 0
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_spawn_failure_raises_spawn_error():
    session = McpSession()
    with pytest.raises(SpawnError) as exc_info:
        await session.start("/nonexistent/mcp-server-binary", [])
    assert exc_info.value.message.startswith("Process spawn failed:")
    assert session.state is SessionState.TERMINATED
    assert not session.alive


@pytest.mark.asyncio
async def test_empty_binary_rejected():
    with pytest.raises(CommandError):
        await McpSession().start("", [])


@pytest.mark.asyncio
async def test_start_twice_raises(stub_spawn):
    spec = stub_spawn("echo")
    session = await _started(spec)
    try:
        with pytest.raises(SessionError):
            await session.start(spec.binary, spec.arguments)
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_initialize_without_process_fails():
    session = McpSession()
    with pytest.raises(InitializationError) as exc_info:
        await session.initialize({})
    assert "Initialization failed: MCP process not available" in exc_info.value.message
    assert not session.initialized


@pytest.mark.asyncio
async def test_stats_and_env(stub_spawn):
    session = await _started(stub_spawn("echo"), color=False, extra_env={"STUB_FLAG": "1"})
    try:
        await session.initialize({})
        stats = session.get_stats().to_dict()
        assert stats["id"] == session.id[:8]
        assert stats["pid"] == session.process.pid
        assert stats["alive"] is True
        assert stats["initialized"] is True
        # Only the initialize response; the banner line is text.
        assert stats["messageCount"] == 1
        env = session.build_env()
        assert env["FORCE_COLOR"] == "0"
        assert env["STUB_FLAG"] == "1"
    finally:
        await session.close()


def test_force_color_default_on():
    assert McpSession().build_env()["FORCE_COLOR"] == "1"


def test_request_ids_are_sequential():
    session = McpSession()
    assert [session.allocate_id() for _ in range(3)] == [1, 2, 3]


@pytest.mark.asyncio
async def test_python_stub_is_spawnable_directly():
    session = McpSession()
    await session.start(sys.executable, ["-c", "import sys; sys.stdin.read()"])
    try:
        assert session.alive
        assert session.state is SessionState.RUNNING
    finally:
        await session.close()
    assert session.terminated


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    try:
        with open(f"/proc/{pid}/stat") as f:
            # Killed orphans may linger as zombies until init reaps them.
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except OSError:
        return True


async def _read_pid(path, timeout: float = 5.0) -> int:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists() and path.read_text().strip():
            return int(path.read_text())
        await asyncio.sleep(0.05)
    raise AssertionError(f"{path} was never written")


async def _wait_dead(pid: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not _pid_alive(pid):
            return True
        await asyncio.sleep(0.05)
    return False


def _shell_command(*commands: str) -> str:
    return " & ".join(commands)


@posix_only
@pytest.mark.asyncio
async def test_shell_command_background_jobs_die_with_session(stub_spawn, tmp_path):
    pid_file = tmp_path / "holder.pid"
    stub = stub_spawn("echo")
    command = _shell_command(
        shlex.join([sys.executable, "-c", PIPE_HOLDER, str(pid_file)]),
        shlex.join([stub.binary, *stub.arguments]),
    )
    parsed = parse_command(command)
    assert parsed.binary == "/bin/sh"

    session = McpSession()
    await session.start(parsed.binary, parsed.arguments)
    try:
        init = await session.initialize({})
        assert init["result"]["serverInfo"]["name"] == "stub"
        holder_pid = await _read_pid(pid_file)
        assert _pid_alive(holder_pid)
    finally:
        await session.close()

    assert session.terminated
    assert await _wait_dead(holder_pid)


@posix_only
@pytest.mark.asyncio
async def test_shell_exit_detected_while_background_job_holds_pipes(tmp_path):
    pid_file = tmp_path / "holder.pid"
    command = _shell_command(
        shlex.join([sys.executable, "-c", PIPE_HOLDER, str(pid_file)]),
        shlex.join([sys.executable, "-c", "import sys; sys.stdin.readline(); sys.exit(1)"]),
    )
    parsed = parse_command(command)

    session = McpSession()
    await session.start(parsed.binary, parsed.arguments)
    try:
        holder_pid = await _read_pid(pid_file)
        with pytest.raises(ProcessUnavailableError):
            await asyncio.wait_for(session.send({"jsonrpc": "2.0", "id": 1, "method": "ping"}), timeout=5)
        assert session.state is SessionState.TERMINATED
        assert session.exit_code == 1
        assert len(session.pending) == 0
        assert await _wait_dead(holder_pid)
    finally:
        await session.close()
