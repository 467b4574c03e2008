"""Tests for the pending-call registry and timeout tiers."""

import asyncio

import pytest

from mcpgate.config.schema import TimeoutConfig
from mcpgate.proxy.pending import PendingCallRegistry, timeout_for_method


@pytest.mark.parametrize(
    "method,expected",
    [
        ("tools/list", 120),
        ("tools/call", 120),
        ("resources/read", 60),
        ("prompts/get", 60),
        ("notifications/initialized", 60),
        ("initialize", 30),
        ("ping", 30),
        (None, 30),
    ],
)
def test_timeout_tiers(method, expected):
    assert timeout_for_method(method) == expected


def test_timeout_tiers_follow_config():
    timeouts = TimeoutConfig(long_seconds=5, medium_seconds=3, default_seconds=1)
    assert timeout_for_method("tools/call", timeouts) == 5
    assert timeout_for_method("resources/list", timeouts) == 3
    assert timeout_for_method("completion/complete", timeouts) == 1


def test_resolve_fires_callback_once():
    registry = PendingCallRegistry()
    delivered = []
    registry.register(1, delivered.append)
    assert registry.resolve(1, {"id": 1, "result": "a"}) is True
    assert registry.resolve(1, {"id": 1, "result": "b"}) is False
    assert delivered == [{"id": 1, "result": "a"}]
    assert len(registry) == 0


def test_resolve_unknown_id_is_orphan():
    registry = PendingCallRegistry()
    assert registry.resolve(42, {"id": 42}) is False


def test_register_rejects_duplicate_and_empty_ids():
    registry = PendingCallRegistry()
    registry.register("a", lambda _: None)
    with pytest.raises(ValueError):
        registry.register("a", lambda _: None)
    with pytest.raises(ValueError):
        registry.register("", lambda _: None)
    with pytest.raises(ValueError):
        registry.register(None, lambda _: None)


@pytest.mark.asyncio
async def test_resolve_before_timeout_defuses_timer():
    registry = PendingCallRegistry()
    fired = []
    registry.register(7, lambda _: None)
    registry.timeout_after(7, 0.05, lambda: fired.append(7))
    registry.resolve(7, {"id": 7, "result": {}})
    await asyncio.sleep(0.15)
    assert fired == []


@pytest.mark.asyncio
async def test_timeout_removes_entry_and_fires():
    registry = PendingCallRegistry()
    fired = []
    delivered = []
    registry.register(3, delivered.append)
    registry.timeout_after(3, 0.01, lambda: fired.append(3))
    await asyncio.sleep(0.1)
    assert fired == [3]
    assert 3 not in registry
    assert registry.resolve(3, {"id": 3}) is False
    assert delivered == []


@pytest.mark.asyncio
async def test_reject_all_settles_everything():
    registry = PendingCallRegistry()
    errors = []
    fired = []
    for request_id in (1, 2, 3):
        registry.register(request_id, lambda _: None, errors.append)
        registry.timeout_after(request_id, 0.05, lambda: fired.append(True))
    boom = RuntimeError("gone")
    assert registry.reject_all(boom) == 3
    assert errors == [boom, boom, boom]
    assert len(registry) == 0
    await asyncio.sleep(0.1)
    assert fired == []


@pytest.mark.asyncio
async def test_discard_cancels_timer():
    registry = PendingCallRegistry()
    fired = []
    registry.register(1, lambda _: None)
    registry.timeout_after(1, 0.01, lambda: fired.append(True))
    registry.discard(1)
    await asyncio.sleep(0.05)
    assert fired == []
    assert registry.ids() == []
