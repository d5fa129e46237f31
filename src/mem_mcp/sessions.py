"""In-memory session bookkeeping for the MCP transports.

One ``SessionStore`` exists per transport kind. Stores are plain dicts driven
from a single event loop, so each operation is atomic with respect to the
others and no cross-session lock is needed. The clock is injectable so idle
eviction can be tested without sleeping.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import anyio
from mcp.server import Server

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class TransportKind(str, Enum):
    STREAMABLE_HTTP = "streamable-http"
    SSE = "sse"


@dataclass
class Session:
    session_id: str
    kind: TransportKind
    transport: Any
    server: Server
    last_access: float = 0.0
    # Requests, including open GET streams, the transport is still serving
    active_requests: int = 0
    # Scope of the task running ``server``, set once that task starts
    scope: anyio.CancelScope | None = None

    async def close(self) -> None:
        try:
            # An SSE session ends with its stream; cancelling the scope closes it
            if self.kind is TransportKind.STREAMABLE_HTTP:
                await self.transport.terminate()
        finally:
            if self.scope is not None:
                self.scope.cancel()


class SessionStore:
    """Mapping of session id to live ``Session`` for one transport kind."""

    def __init__(
        self,
        kind: TransportKind,
        idle_timeout: float | None = None,
        clock: Clock = time.monotonic,
    ):
        self.kind = kind
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def insert(self, session: Session) -> None:
        if session.session_id in self._sessions:
            raise KeyError(f"Session {session.session_id} already exists")
        session.last_access = self._clock()
        self._sessions[session.session_id] = session

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def touch(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_access = self._clock()
        return session

    def remove(self, session_id: str) -> Session | None:
        return self._sessions.pop(session_id, None)

    def sweep_expired(self) -> list[Session]:
        """Remove and return every session idle for longer than ``idle_timeout``.

        Sessions with a request in flight are never idle.
        """
        if self.idle_timeout is None:
            return []
        now = self._clock()
        expired = [
            s
            for s in self._sessions.values()
            if s.active_requests == 0 and now - s.last_access > self.idle_timeout
        ]
        for s in expired:
            del self._sessions[s.session_id]
        return expired


class SessionReaper:
    """Periodically evicts idle sessions from a store."""

    def __init__(self, store: SessionStore, interval: float):
        self._store = store
        self._interval = interval

    async def sweep(self) -> int:
        expired = self._store.sweep_expired()
        for session in expired:
            logger.info("Evicting idle %s session: %s", session.kind.value, session.session_id)
            try:
                await session.close()
            except Exception:
                logger.exception("Error closing session %s", session.session_id)
        return len(expired)

    async def run(self) -> None:
        while True:
            await anyio.sleep(self._interval)
            await self.sweep()
