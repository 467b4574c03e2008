"""Correlation table for in-flight requests to a child process.

Each entry maps a request id to a single-shot resolve callback, an optional
reject callback and an optional timer. Whichever of resolve, timeout or
rejection happens first removes the entry; everything after that is a no-op.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger

from mcpgate.config.schema import TimeoutConfig

RequestId = int | str
ResolveCallback = Callable[[dict[str, Any]], None]
RejectCallback = Callable[[BaseException], None]


def timeout_for_method(method: str | None, timeouts: TimeoutConfig | None = None) -> float:
    """Pick the long, medium or default budget (seconds) for a method."""
    timeouts = timeouts or TimeoutConfig()
    if not method:
        return timeouts.default_seconds
    if "tools/list" in method or "tools/call" in method:
        return timeouts.long_seconds
    if "resources/" in method or "prompts/" in method or "notifications/" in method:
        return timeouts.medium_seconds
    return timeouts.default_seconds


@dataclass
class _PendingCall:
    resolve: ResolveCallback
    reject: RejectCallback | None = None
    timer: asyncio.TimerHandle | None = None


class PendingCallRegistry:
    """At most one entry per id; each entry settles exactly once."""

    def __init__(self) -> None:
        self._calls: dict[RequestId, _PendingCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._calls

    def ids(self) -> list[RequestId]:
        return list(self._calls)

    def register(
        self,
        request_id: RequestId | None,
        resolve: ResolveCallback,
        reject: RejectCallback | None = None,
    ) -> None:
        if not request_id:
            raise ValueError("pending calls need a non-empty request id")
        if request_id in self._calls:
            raise ValueError(f"request id already pending: {request_id!r}")
        self._calls[request_id] = _PendingCall(resolve=resolve, reject=reject)

    def resolve(self, request_id: RequestId, response: dict[str, Any]) -> bool:
        """Deliver a response; returns False for orphans (no pending entry)."""
        call = self._calls.pop(request_id, None)
        if call is None:
            return False
        if call.timer is not None:
            call.timer.cancel()
        call.resolve(response)
        return True

    def timeout_after(
        self,
        request_id: RequestId,
        seconds: float,
        on_timeout: Callable[[], None],
    ) -> None:
        """Fire ``on_timeout`` if the id is still pending after ``seconds``."""
        call = self._calls.get(request_id)
        if call is None:
            return
        if call.timer is not None:
            call.timer.cancel()

        def _expire() -> None:
            expired = self._calls.get(request_id)
            if expired is not call:
                return
            del self._calls[request_id]
            on_timeout()

        call.timer = asyncio.get_running_loop().call_later(seconds, _expire)

    def discard(self, request_id: RequestId) -> None:
        call = self._calls.pop(request_id, None)
        if call is not None and call.timer is not None:
            call.timer.cancel()

    def reject_all(self, exc: BaseException) -> int:
        """Settle every entry with ``exc`` (when it has a reject path) and clear."""
        calls, self._calls = self._calls, {}
        for request_id, call in calls.items():
            if call.timer is not None:
                call.timer.cancel()
            if call.reject is not None:
                call.reject(exc)
            else:
                logger.debug("Dropped pending call {} without reject path", request_id)
        return len(calls)