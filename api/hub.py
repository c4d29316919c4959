"""
Broadcast hub: live connections per session and per participant.

Each session id maps to the set of connections watching it; each participant id maps
to the single connection presumed to be theirs (the latest registration wins). A
reverse index from connection to its registrations keeps detach proportional to what
that connection registered.

Delivery is best-effort. A connection whose send fails is pruned; the operation that
produced the message never fails because of it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from api.messages import RoleRevealMessage, to_wire

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """What the hub needs from a transport connection (FastAPI's WebSocket fits)."""

    async def send_json(self, data: Any) -> None: ...


@dataclass
class _Registrations:
    sessions: set[str] = field(default_factory=set)
    participants: set[str] = field(default_factory=set)


class BroadcastHub:
    """Connection registry with its own lock, disjoint from session state."""

    def __init__(self):
        self._sessions: dict[str, set[Connection]] = {}
        self._participants: dict[str, Connection] = {}
        self._by_connection: dict[Connection, _Registrations] = {}
        self._lock = asyncio.Lock()

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def register(
        self,
        session_id: str,
        connection: Connection,
        participant_id: Optional[str] = None,
    ) -> None:
        """Watch a session; optionally bind the connection to a participant."""
        async with self._lock:
            self._sessions.setdefault(session_id, set()).add(connection)
            regs = self._by_connection.setdefault(connection, _Registrations())
            regs.sessions.add(session_id)
            if participant_id is not None:
                previous = self._participants.get(participant_id)
                if previous is not None and previous is not connection:
                    self._by_connection.get(previous, _Registrations()).participants.discard(participant_id)
                self._participants[participant_id] = connection
                regs.participants.add(participant_id)
        logger.debug(
            "[%s] connection registered (participant=%s, %d watching)",
            session_id,
            participant_id,
            self.count(session_id),
        )

    async def detach(self, connection: Connection) -> list[str]:
        """
        Forget a connection everywhere. Returns the participant ids that were still
        mapped to it (participants that reconnected elsewhere are not included).
        """
        async with self._lock:
            return self._detach_locked(connection)

    def _detach_locked(self, connection: Connection) -> list[str]:
        regs = self._by_connection.pop(connection, None)
        if regs is None:
            return []
        for session_id in regs.sessions:
            conns = self._sessions.get(session_id)
            if conns is None:
                continue
            conns.discard(connection)
            if not conns:
                del self._sessions[session_id]
        orphaned = []
        for participant_id in regs.participants:
            if self._participants.get(participant_id) is connection:
                del self._participants[participant_id]
                orphaned.append(participant_id)
        return orphaned

    def count(self, session_id: str) -> int:
        return len(self._sessions.get(session_id, ()))

    def connection_for(self, participant_id: str) -> Optional[Connection]:
        return self._participants.get(participant_id)

    def is_connected(self, participant_id: str) -> bool:
        return participant_id in self._participants

    # ── Sending ────────────────────────────────────────────────────────────────

    async def publish(self, message: Any) -> None:
        """Deliver one outbound message; role reveals go only to their owner."""
        async with self._lock:
            if isinstance(message, RoleRevealMessage):
                conn = self.connection_for(message.participant_id or "")
                # Only deliver to the owner if it is watching this session
                regs = self._by_connection.get(conn) if conn is not None else None
                targets = [conn] if regs and message.session_id in regs.sessions else []
            else:
                targets = list(self._sessions.get(message.session_id, ()))
        if not targets:
            return

        data = to_wire(message)
        failed = []
        for conn in targets:
            try:
                await conn.send_json(data)
            except Exception as exc:
                logger.warning("[%s] %s delivery failed: %s", message.session_id, message.type, exc)
                failed.append(conn)

        if failed:
            async with self._lock:
                for conn in failed:
                    self._detach_locked(conn)

    async def publish_all(self, messages: list[Any]) -> None:
        for message in messages:
            await self.publish(message)
