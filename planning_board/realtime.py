"""Connected sessions, room membership and event fan-out."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from .domain import Identity, isoformat, utcnow
from .logger import get_logger

logger = get_logger(__name__)


class Transport(Protocol):
    """The part of a WebSocket the broadcaster needs."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass(slots=True)
class Session:
    """One authenticated transport connection."""

    session_id: str
    identity: Identity
    transport: Transport
    connected_at: datetime = field(default_factory=utcnow)
    room: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.identity.user_id


def envelope(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": event, "data": data, "timestamp": isoformat(utcnow())}


class SessionRegistry:
    """Tracks connected sessions by id and by user.

    A user may hold several sessions at once; each session is in at most one
    room.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._by_user: Dict[str, List[str]] = {}
        self._mutex = threading.RLock()

    def __len__(self) -> int:
        return len(self._sessions)

    def register(self, identity: Identity, transport: Transport) -> Session:
        session = Session(session_id=str(uuid4()), identity=identity, transport=transport)
        with self._mutex:
            self._sessions[session.session_id] = session
            self._by_user.setdefault(identity.user_id, []).append(session.session_id)
        return session

    def unregister(self, session_id: str) -> Tuple[Optional[Session], bool]:
        """Drop a session; the flag says whether it was the user's last one."""

        with self._mutex:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return None, False
            remaining = self._by_user.get(session.user_id, [])
            if session_id in remaining:
                remaining.remove(session_id)
            if not remaining:
                self._by_user.pop(session.user_id, None)
                return session, True
            return session, False

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def join(self, session_id: str, room: str) -> Optional[str]:
        """Move the session into ``room`` and return the room it left."""

        with self._mutex:
            session = self._sessions[session_id]
            previous = session.room
            session.room = room
            return previous if previous != room else None

    def leave(self, session_id: str) -> bool:
        with self._mutex:
            session = self._sessions.get(session_id)
            if session is None or session.room is None:
                return False
            session.room = None
            return True

    def members(self, room: str) -> List[Session]:
        with self._mutex:
            return [session for session in self._sessions.values() if session.room == room]

    def sessions(self) -> List[Session]:
        with self._mutex:
            return list(self._sessions.values())

    def sessions_for_user(self, user_id: str) -> List[Session]:
        with self._mutex:
            return [self._sessions[sid] for sid in self._by_user.get(user_id, [])]

    def has_sessions(self, user_id: str) -> bool:
        with self._mutex:
            return bool(self._by_user.get(user_id))

    def connected_users(self, room: Optional[str] = None) -> List[Dict[str, Any]]:
        """One entry per user, in the order users first connected."""

        users: List[Dict[str, Any]] = []
        seen = set()
        with self._mutex:
            for session in self._sessions.values():
                if session.user_id in seen:
                    continue
                if room is not None and session.room != room:
                    continue
                seen.add(session.user_id)
                entry = session.identity.to_payload()
                entry["connectedAt"] = isoformat(session.connected_at)
                entry["room"] = session.room
                users.append(entry)
        return users

    def stats(self, room: str) -> Dict[str, int]:
        with self._mutex:
            return {
                "totalConnections": len(self._sessions),
                "uniqueUsers": len(self._by_user),
                "roomUsers": len(self.connected_users(room)),
            }


class EventBroadcaster:
    """Deliver events to a room, a session, a user or everybody."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry

    async def _deliver(self, session: Session, message: Dict[str, Any]) -> bool:
        try:
            await session.transport.send_json(message)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "realtime_send_failed",
                session_id=session.session_id,
                user_id=session.user_id,
                message_type=message["type"],
                error=str(exc),
            )
            self._registry.unregister(session.session_id)
            return False
        return True

    async def broadcast(
        self,
        event: str,
        data: Dict[str, Any],
        *,
        room: str,
        exclude: Optional[str] = None,
    ) -> int:
        message = envelope(event, data)
        delivered = 0
        for session in self._registry.members(room):
            if session.session_id == exclude:
                continue
            if await self._deliver(session, message):
                delivered += 1
        logger.debug(
            "realtime_broadcast", message_type=event, room=room, delivered=delivered
        )
        return delivered

    async def send(self, session_id: str, event: str, data: Dict[str, Any]) -> bool:
        session = self._registry.get(session_id)
        if session is None:
            return False
        return await self._deliver(session, envelope(event, data))

    async def send_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        message = envelope(event, data)
        delivered = 0
        for session in self._registry.sessions_for_user(user_id):
            if await self._deliver(session, message):
                delivered += 1
        return delivered

    async def send_to_all(self, event: str, data: Dict[str, Any]) -> int:
        message = envelope(event, data)
        delivered = 0
        for session in self._registry.sessions():
            if await self._deliver(session, message):
                delivered += 1
        return delivered


__all__ = ["Session", "SessionRegistry", "EventBroadcaster", "Transport", "envelope"]
