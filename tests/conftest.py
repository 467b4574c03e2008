"""Pytest hooks and fixtures."""

import sys

import pytest

from mcpgate.proxy.registry import SpawnSpec

# Minimal stdio MCP server. Mode comes from argv: "echo" answers every
# request with {"echo": true}; "silent" only answers initialize.
# "stub/seen" returns every method received so far; "stub/crash" exits 1.
STUB_CHILD = r'''
import json
import sys

mode = sys.argv[1] if len(sys.argv) > 1 else "echo"
seen = []
print("stub child ready", flush=True)
print("ERROR stub stderr noise", file=sys.stderr, flush=True)


def reply(msg_id, result):
    sys.stdout.write(json.dumps({"jsonrpc": "2.0", "id": msg_id, "result": result}) + "\n")
    sys.stdout.flush()


for line in iter(sys.stdin.readline, ""):
    line = line.strip()
    if not line:
        continue
    msg = json.loads(line)
    method = msg.get("method")
    seen.append(method)
    if "id" not in msg:
        continue
    if method == "initialize":
        reply(msg["id"], {
            "protocolVersion": "2024-11-05",
            "capabilities": {},
            "serverInfo": {"name": "stub", "version": "1.0.0"},
        })
    elif method == "stub/seen":
        reply(msg["id"], {"methods": seen})
    elif method == "stub/crash":
        sys.exit(1)
    elif mode == "silent":
        continue
    else:
        reply(msg["id"], {"echo": True})
'''


def pytest_configure(config):
    """Register custom markers (also in pyproject.toml)."""
    config.addinivalue_line("markers", "slow: spawns real child processes")


@pytest.fixture
def stub_spawn():
    """Factory for a SpawnSpec running the stub child in the given mode."""

    def _build(mode: str = "echo") -> SpawnSpec:
        return SpawnSpec(binary=sys.executable, arguments=["-c", STUB_CHILD, mode])

    return _build
