############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# registry.py: In-memory registry of live duplex chat sessions
#
############################################################

"""Connection registry.

Maps each user to their open duplex sessions so events (machine status
changes, streamed chunks) can be pushed to every tab a user has open.
Lives for one application lifetime; created in the FastAPI lifespan.
"""

import asyncio
from typing import Any, Dict, List, Protocol, Set

from backend.app.core.metrics import OPEN_SESSIONS
from backend.app.logging_config import get_logger

logger = get_logger(__name__)


class DuplexSession(Protocol):
    """Anything events can be pushed to."""

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, data: Dict[str, Any]) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ConnectionRegistry:
    """User id -> open sessions."""

    def __init__(self):
        self._sessions: Dict[str, Set[DuplexSession]] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: str, session: DuplexSession) -> None:
        async with self._lock:
            self._sessions.setdefault(user_id, set()).add(session)
            OPEN_SESSIONS.inc()
        logger.info("session_registered", user_id=user_id, sessions=self.session_count(user_id))

    async def unregister(self, user_id: str, session: DuplexSession) -> None:
        """Forget a session; the user's entry goes away with their last one."""
        async with self._lock:
            sessions = self._sessions.get(user_id)
            if not sessions or session not in sessions:
                return
            sessions.discard(session)
            OPEN_SESSIONS.dec()
            if not sessions:
                del self._sessions[user_id]
        logger.info("session_unregistered", user_id=user_id)

    def session_count(self, user_id: str) -> int:
        return len(self._sessions.get(user_id, ()))

    def user_ids(self) -> List[str]:
        return list(self._sessions)

    async def send(self, session: DuplexSession, event: Dict[str, Any]) -> bool:
        """Best-effort send to one session; closed or failing sessions are skipped."""
        if not session.is_open:
            return False
        try:
            await session.send_json(event)
            return True
        except Exception as e:
            logger.debug("session_send_failed", event_type=event.get("type"), error=str(e))
            return False

    async def broadcast(self, user_id: str, event: Dict[str, Any]) -> int:
        """Send an event to every open session of a user. Returns deliveries."""
        async with self._lock:
            sessions = list(self._sessions.get(user_id, ()))
        delivered = 0
        for session in sessions:
            if await self.send(session, event):
                delivered += 1
        return delivered

    async def close_all(self, code: int = 1001) -> None:
        """Close every session; used on shutdown."""
        async with self._lock:
            sessions = [s for group in self._sessions.values() for s in group]
            self._sessions.clear()
            OPEN_SESSIONS.set(0)
        for session in sessions:
            if not session.is_open:
                continue
            try:
                await session.close(code)
            except Exception as e:
                logger.debug("session_close_failed", error=str(e))
