"""In-memory stores owned by the running application.

AuthSessionStore holds pending Duo authorization sessions keyed by state.
ConnectionRegistry holds open push-SSE streams keyed by connection id.
Neither survives a restart. Both run a periodic sweep task between
``start()`` and ``shutdown()``.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from oauth.introspection import VerifiedIdentity

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 10 * 60
CONNECTION_MAX_AGE_SECONDS = 60 * 60
SWEEP_INTERVAL_SECONDS = 10 * 60


class _PeriodicSweeper:
    """Runs ``sweep()`` on an interval inside the event loop."""

    sweep_interval: float = SWEEP_INTERVAL_SECONDS
    _task: Optional[asyncio.Task] = None

    def sweep(self) -> int:
        raise NotImplementedError

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("[STORE] Sweep failed")

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def shutdown(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


# ============== Authorization sessions ==============

@dataclass
class AuthorizationSession:
    state: str
    code_verifier: str
    created_at: float
    authenticated: bool = False
    exchanging: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None


class AuthSessionStore(_PeriodicSweeper):
    """Pending and completed authorization sessions, keyed by ``state``."""

    def __init__(
        self,
        ttl: float = SESSION_TTL_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._sessions: dict[str, AuthorizationSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, state: str) -> bool:
        return state in self._sessions

    def create(self, state: str, code_verifier: str) -> AuthorizationSession:
        session = AuthorizationSession(state=state, code_verifier=code_verifier, created_at=self.clock())
        self._sessions[state] = session
        return session

    def peek(self, state: str) -> Optional[AuthorizationSession]:
        """Return the session for ``state`` without checking its age."""
        return self._sessions.get(state)

    def get(self, state: str) -> Optional[AuthorizationSession]:
        """Return the session for ``state`` unless it is missing or past its TTL."""
        session = self._sessions.get(state)
        if session is None:
            return None
        if self.clock() - session.created_at > self.ttl:
            return None
        return session

    def sweep(self) -> int:
        """Delete sessions older than the TTL. Returns the number removed."""
        now = self.clock()
        expired = [state for state, s in self._sessions.items() if now - s.created_at > self.ttl]
        for state in expired:
            del self._sessions[state]
        if expired:
            logger.info(f"[OAUTH] Swept {len(expired)} expired session(s)")
        return len(expired)


# ============== Push-SSE connections ==============

@dataclass
class Connection:
    connection_id: str
    identity: VerifiedIdentity
    connected_at: float
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)

    async def send(self, event: str, data: Any):
        await self.queue.put({"event": event, "data": data})


class ConnectionRegistry(_PeriodicSweeper):
    """Open push-SSE streams, keyed by an unguessable connection id.

    A POST names its stream explicitly by connection id, and the stream's
    identity must match the caller's, so replies are never routed to another
    stream of the same user.
    """

    def __init__(
        self,
        max_age: float = CONNECTION_MAX_AGE_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.max_age = max_age
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._connections: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def open(self, identity: VerifiedIdentity) -> Connection:
        connection = Connection(
            connection_id=secrets.token_urlsafe(16),
            identity=identity,
            connected_at=self.clock(),
        )
        self._connections[connection.connection_id] = connection
        logger.info(f"[SSE] Connection opened: {connection.connection_id} (active: {len(self)})")
        return connection

    def close(self, connection_id: str):
        if self._connections.pop(connection_id, None) is not None:
            logger.info(f"[SSE] Connection closed: {connection_id} (active: {len(self)})")

    def get(self, connection_id: Optional[str], identity: VerifiedIdentity) -> Optional[Connection]:
        """Return the connection if it exists and belongs to ``identity``."""
        if not connection_id:
            return None
        connection = self._connections.get(connection_id)
        if connection is None or connection.identity.email != identity.email:
            return None
        return connection

    def sweep(self) -> int:
        """Drop connections older than the max age. Returns the number removed."""
        now = self.clock()
        expired = [cid for cid, c in self._connections.items() if now - c.connected_at > self.max_age]
        for cid in expired:
            logger.info(f"[SSE] Expired connection removed: {cid}")
            # None ends the stream generator
            self._connections.pop(cid).queue.put_nowait(None)
        return len(expired)
