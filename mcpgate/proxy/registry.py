"""Process-wide map from session key to McpSession.

One registry is constructed at server start, handed to the HTTP layer, and
torn down from the lifespan shutdown hook. Lookups do not probe liveness;
a dead session is noticed lazily (failed send, ``alive`` in stats, or the
respawn check below).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Iterator

from loguru import logger

from mcpgate.config.schema import Config, TimeoutConfig
from mcpgate.proxy.command_parser import ParsedCommand
from mcpgate.proxy.session import McpSession
from mcpgate.utils.exceptions import SessionError

SESSION_KEY_DELIMITER = "-"
CREDENTIAL_SUFFIX_LENGTH = 8


def make_session_key(session_id: str | None, api_key: str | None) -> str:
    """Combine the logical session id with the last 8 chars of the credential."""
    session_id = session_id or "default"
    api_key = api_key or "default"
    return f"{session_id}{SESSION_KEY_DELIMITER}{api_key[-CREDENTIAL_SUFFIX_LENGTH:]}"


def logical_session_id(session_key: str) -> str:
    """
    Strip the credential suffix back off a session key.

    The suffix is a fixed-width slice of the credential and may itself
    contain the delimiter, so it is cut by length. Keys built from a
    credential shorter than the suffix width are ambiguous; prefer
    ``SessionRegistry.logical_id`` for keys the registry created.
    """
    cut = len(session_key) - CREDENTIAL_SUFFIX_LENGTH - len(SESSION_KEY_DELIMITER)
    if cut > 0 and session_key[cut:].startswith(SESSION_KEY_DELIMITER):
        return session_key[:cut]
    return session_key.rsplit(SESSION_KEY_DELIMITER, 1)[0]


@dataclass(frozen=True)
class SpawnSpec:
    """What every new session launches."""

    binary: str
    arguments: list[str] = field(default_factory=list)

    @classmethod
    def from_parsed(cls, parsed: ParsedCommand) -> "SpawnSpec | None":
        if parsed.is_empty:
            return None
        return cls(binary=parsed.binary, arguments=list(parsed.arguments))


class SessionRegistry:
    """Lazily creates sessions per key and tears them all down on shutdown."""

    def __init__(
        self,
        spawn_spec: SpawnSpec | None = None,
        *,
        timeouts: TimeoutConfig | None = None,
        color: bool = True,
        extra_env: dict[str, str] | None = None,
        send_initialized_notification: bool = True,
        respawn_dead: bool = True,
        session_factory: Callable[[], McpSession] | None = None,
    ):
        self.spawn_spec = spawn_spec
        self.respawn_dead = respawn_dead
        self._session_factory = session_factory or (
            lambda: McpSession(
                timeouts=timeouts,
                color=color,
                extra_env=extra_env,
                send_initialized_notification=send_initialized_notification,
            )
        )
        self._sessions: dict[str, McpSession] = {}
        self._creating: dict[str, asyncio.Future] = {}
        self._logical_ids: dict[str, str] = {}

    @classmethod
    def from_config(cls, config: Config, spawn_spec: SpawnSpec | None) -> "SessionRegistry":
        return cls(
            spawn_spec,
            timeouts=config.timeouts,
            color=config.child.color,
            extra_env=config.child.env,
            send_initialized_notification=config.sessions.send_initialized_notification,
            respawn_dead=config.sessions.respawn_dead,
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_key: object) -> bool:
        return session_key in self._sessions

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))

    def items(self) -> list[tuple[str, McpSession]]:
        return list(self._sessions.items())

    def get(self, session_key: str) -> McpSession | None:
        return self._sessions.get(session_key)

    def logical_id(self, session_key: str) -> str:
        """The session id the client sent for ``session_key``, without the credential suffix."""
        return self._logical_ids.get(session_key) or logical_session_id(session_key)

    async def get_or_create(self, session_key: str, logical_id: str | None = None) -> McpSession:
        """
        Return the session for ``session_key``, spawning a new one if needed.

        Concurrent callers for the same key share one spawn. If the caller
        doing the spawn is cancelled, the others get a SessionError rather
        than the cancellation.
        """
        session = self._sessions.get(session_key)
        if session is not None:
            if not (session.terminated and self.respawn_dead):
                return session
            logger.info("Session {} for {} has terminated; spawning a fresh one", session.short_id, session_key)
            del self._sessions[session_key]

        in_flight = self._creating.get(session_key)
        if in_flight is not None:
            return await asyncio.shield(in_flight)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._creating[session_key] = future
        try:
            session = self._session_factory()
            if self.spawn_spec is not None:
                await session.start(self.spawn_spec.binary, self.spawn_spec.arguments)
        except asyncio.CancelledError:
            session.cleanup()
            future.set_exception(SessionError(session_key, "Session creation was cancelled"))
            future.exception()
            raise
        except Exception as e:
            future.set_exception(e)
            future.exception()  # mark retrieved when nobody else is waiting
            raise
        finally:
            self._creating.pop(session_key, None)

        self._sessions[session_key] = session
        if logical_id is not None:
            self._logical_ids[session_key] = logical_id
        future.set_result(session)
        logger.info("Created session {} for key {}", session.short_id, self.logical_id(session_key))
        return session

    def remove(self, session_key: str) -> bool:
        session = self._sessions.pop(session_key, None)
        self._logical_ids.pop(session_key, None)
        if session is None:
            return False
        session.cleanup()
        return True

    def remove_all(self) -> int:
        """Clean up every session and empty the registry; runs to completion synchronously."""
        sessions, self._sessions = self._sessions, {}
        self._logical_ids.clear()
        for session in sessions.values():
            session.cleanup()
        if sessions:
            logger.info("Cleaned up {} session(s)", len(sessions))
        return len(sessions)
