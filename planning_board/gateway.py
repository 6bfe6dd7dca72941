"""Realtime coordination of drag locks, moves and board broadcasts.

``PlanningGateway`` is shared by the WebSocket endpoint and the REST handlers.
Every lock mutation and the broadcast it causes happen under one
``asyncio.Lock``, so room members observe the lock of an order before its
unlock. Operations on different orders are not ordered relative to each
other beyond that.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from .auth import TokenIdentityProvider
from .config import DEFAULT_ROOM
from .domain import (
    DragLock,
    Identity,
    LockResult,
    UnlockReason,
    UserRole,
    isoformat,
    utcnow,
)
from .errors import (
    ConflictError,
    InvalidInputError,
    LockNotHeldError,
    PermissionDeniedError,
    PlanningBoardError,
)
from .logger import get_logger
from .reconciliation import MoveResult, ReconciliationResult
from .realtime import EventBroadcaster, Session, SessionRegistry, Transport
from .services import PlanningService

logger = get_logger(__name__)

Handler = Callable[[Session, Mapping[str, Any]], Awaitable[None]]


def _required(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    raise InvalidInputError(f"{keys[0]} is required")


class PlanningGateway:
    """Binds the planning service to connected sessions."""

    def __init__(
        self,
        service: PlanningService,
        identities: TokenIdentityProvider,
        registry: Optional[SessionRegistry] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        *,
        room: str = DEFAULT_ROOM,
    ) -> None:
        self.service = service
        self.identities = identities
        self.registry = registry or SessionRegistry()
        self.broadcaster = broadcaster or EventBroadcaster(self.registry)
        self.room = room
        self._serial = asyncio.Lock()
        self._handlers: Dict[str, Handler] = {
            "join-room": self._on_join_room,
            "leave-room": self._on_leave_room,
            "drag-start": self._on_drag_start,
            "drag-end": self._on_drag_end,
            "order-move": self._on_order_move,
            "reorder": self._on_reorder,
            "order-updated": self._on_order_updated,
            "work-centre-updated": self._on_work_centre_updated,
            "ping": self._on_ping,
        }

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def authenticate(self, credential: Optional[str]) -> Identity:
        return self.identities.resolve(credential)

    async def connect(self, transport: Transport, identity: Identity) -> Session:
        session = self.registry.register(identity, transport)
        logger.info(
            "realtime_connected",
            session_id=session.session_id,
            user_id=identity.user_id,
        )
        await self.broadcaster.send(
            session.session_id,
            "connection-established",
            {
                "sessionId": session.session_id,
                "user": identity.to_payload(),
                "connectedUsers": self.registry.connected_users(),
                "activeLocks": self.service.locks.snapshot(),
            },
        )
        return session

    async def disconnect(
        self, session: Session, reason: str = "transport closed"
    ) -> List[DragLock]:
        """Unregister a session and clean up after the user's last connection."""

        async with self._serial:
            room = session.room
            self.registry.unregister(session.session_id)
            released: List[DragLock] = []
            if not self.registry.has_sessions(session.user_id):
                released = self.service.locks.release_all_for_user(session.user_id)
            for lock in released:
                await self._broadcast_unlock(lock, UnlockReason.DISCONNECT)
            if room == self.room:
                await self.broadcaster.broadcast(
                    "user-left",
                    {
                        "userId": session.user_id,
                        "displayName": session.identity.display_name,
                        "reason": reason,
                        "leftAt": isoformat(utcnow()),
                    },
                    room=self.room,
                )
        logger.info(
            "realtime_disconnected",
            session_id=session.session_id,
            user_id=session.user_id,
            reason=reason,
            released=len(released),
        )
        return released

    # ------------------------------------------------------------------
    # Coordinated operations
    # ------------------------------------------------------------------
    async def _broadcast_unlock(
        self,
        lock: DragLock,
        reason: UnlockReason,
        *,
        completed: bool = False,
        to_work_centre_id: Optional[str] = None,
    ) -> None:
        await self.broadcaster.broadcast(
            "order-unlocked",
            {
                "orderId": lock.order_id,
                "orderNumber": lock.order_number,
                "completed": completed,
                "reason": reason.value,
                "unlockedBy": lock.holder_display_name,
                "unlockedByUserId": lock.holder_user_id,
                "toWorkCentreId": to_work_centre_id,
                "unlockedAt": isoformat(utcnow()),
            },
            room=self.room,
        )

    async def _broadcast_moved(self, result: MoveResult, identity: Identity) -> None:
        await self.broadcaster.broadcast(
            "order-moved",
            {
                "order": result.order.to_payload(),
                "fromWorkCentreId": result.from_work_centre_id,
                "toWorkCentreId": result.to_work_centre_id,
                "movedBy": identity.display_name,
                "movedByUserId": identity.user_id,
                "movedAt": isoformat(utcnow()),
            },
            room=self.room,
        )

    async def start_move(
        self,
        order_id: str,
        identity: Identity,
        *,
        order_number: Optional[str] = None,
    ) -> LockResult:
        async with self._serial:
            result = self.service.start_move(order_id, identity, order_number=order_number)
            await self.broadcaster.broadcast(
                "order-locked",
                result.lock.to_payload(self.service.locks.now()),
                room=self.room,
            )
        return result

    async def end_move(
        self,
        order_id: str,
        identity: Identity,
        *,
        completed: bool = False,
        target_work_centre_id: Optional[str] = None,
        position: Optional[Any] = None,
    ) -> Tuple[DragLock, Optional[MoveResult]]:
        """Release the caller's lock, finishing the move first when requested.

        A failed move raises before the lock is touched, so the caller keeps
        the lock and may retry or cancel.
        """

        order_id = str(order_id)
        async with self._serial:
            held = self.service.locks.is_locked(order_id)
            if held is None or held.holder_user_id != identity.user_id:
                raise LockNotHeldError(order_id)
            move: Optional[MoveResult] = None
            if completed and target_work_centre_id is not None:
                order = self.service.get_order(order_id)
                if str(target_work_centre_id) != order.work_centre_id or position is not None:
                    move = self.service.move_order(
                        order_id,
                        str(target_work_centre_id),
                        identity,
                        reason="drag_and_drop",
                        position=position,
                    )
                    await self._broadcast_moved(move, identity)
            lock = self.service.end_move(order_id, identity)
            await self._broadcast_unlock(
                lock,
                UnlockReason.RELEASED,
                completed=completed,
                to_work_centre_id=(
                    str(target_work_centre_id) if target_work_centre_id is not None else None
                ),
            )
        return lock, move

    async def move_order(
        self,
        order_id: str,
        to_work_centre_id: str,
        identity: Identity,
        *,
        reason: str = "user_decision",
        position: Optional[Any] = None,
    ) -> MoveResult:
        async with self._serial:
            result = self.service.move_order(
                order_id, to_work_centre_id, identity, reason=reason, position=position
            )
            await self._broadcast_moved(result, identity)
        return result

    async def reorder(
        self, work_centre_id: str, order_positions: Any, identity: Identity
    ) -> ReconciliationResult:
        async with self._serial:
            result = self.service.reorder(work_centre_id, order_positions, identity)
            changed = {update.order_id for update in result.updates}
            for order in result.orders:
                if order.id not in changed:
                    continue
                await self.broadcaster.broadcast(
                    "order-moved",
                    {
                        "order": order.to_payload(),
                        "fromWorkCentreId": result.work_centre_id,
                        "toWorkCentreId": result.work_centre_id,
                        "movedBy": identity.display_name,
                        "movedByUserId": identity.user_id,
                        "movedAt": isoformat(utcnow()),
                    },
                    room=self.room,
                )
        return result

    async def force_unlock(self, order_id: str, identity: Identity) -> DragLock:
        if identity.role != UserRole.ADMIN:
            raise PermissionDeniedError("Only administrators may clear drag locks")
        order_id = str(order_id)
        async with self._serial:
            lock = self.service.locks.force_expire(order_id)
            if lock is None:
                raise LockNotHeldError(order_id)
            self.service.audit.record(
                "lock_forced",
                user_id=identity.user_id,
                order_id=order_id,
                held_by=lock.holder_user_id,
            )
            await self._broadcast_unlock(lock, UnlockReason.FORCED)
        return lock

    async def sweep_expired(self) -> List[DragLock]:
        async with self._serial:
            expired = self.service.locks.expire_sweep()
            for lock in expired:
                await self._broadcast_unlock(lock, UnlockReason.TIMEOUT)
        return expired

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Expire stale locks forever; started as a task at application startup."""

        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep_expired()
            except Exception:  # noqa: BLE001
                logger.exception("lock_sweep_failed")

    # ------------------------------------------------------------------
    # Notifications and status
    # ------------------------------------------------------------------
    async def notify_user(self, user_id: str, notification: Mapping[str, Any]) -> int:
        return await self.broadcaster.send_to_user(user_id, "notification", dict(notification))

    async def notify_room(self, notification: Mapping[str, Any]) -> int:
        return await self.broadcaster.broadcast(
            "notification", dict(notification), room=self.room
        )

    def board_status(self) -> Dict[str, Any]:
        stats = self.registry.stats(self.room)
        active = self.service.locks.active_locks()
        return {
            "isActive": stats["roomUsers"] > 0,
            "activeUsers": self.registry.connected_users(self.room),
            "totalConnections": stats["totalConnections"],
            "uniqueUsers": stats["uniqueUsers"],
            "activeDragOperations": len(active),
            "timestamp": isoformat(utcnow()),
        }

    # ------------------------------------------------------------------
    # Wire protocol
    # ------------------------------------------------------------------
    async def dispatch(self, session: Session, message: Any) -> None:
        """Handle one client frame; domain errors become targeted replies."""

        if not isinstance(message, Mapping) or not isinstance(message.get("type"), str):
            await self._send_error(session, InvalidInputError("Message must carry a type"), None)
            return
        kind = message["type"]
        data = message.get("data") or {}
        handler = self._handlers.get(kind)
        if handler is None or not isinstance(data, Mapping):
            await self._send_error(
                session, InvalidInputError(f"Unsupported message {kind!r}"), kind
            )
            return
        try:
            await handler(session, data)
        except ConflictError as exc:
            await self.broadcaster.send(
                session.session_id,
                "drag-conflict",
                {
                    "orderId": exc.order_id,
                    "orderNumber": exc.lock.order_number,
                    "heldBy": exc.lock.holder_display_name,
                    "heldByUserId": exc.lock.holder_user_id,
                    "expiry": isoformat(exc.lock.expires_at),
                    "requestType": kind,
                    "error": exc.message,
                },
            )
        except LockNotHeldError as exc:
            await self.broadcaster.send(
                session.session_id,
                "drag-error",
                dict(exc.to_payload(), requestType=kind),
            )
        except PlanningBoardError as exc:
            await self._send_error(session, exc, kind)
        except Exception:  # noqa: BLE001
            logger.exception(
                "realtime_handler_failed",
                request_type=kind,
                session_id=session.session_id,
                user_id=session.user_id,
                order_id=data.get("orderId"),
            )
            await self.broadcaster.send(
                session.session_id,
                "error",
                {"error": "Internal server error", "code": "INTERNAL_ERROR", "requestType": kind},
            )

    async def _send_error(
        self, session: Session, error: PlanningBoardError, kind: Optional[str]
    ) -> None:
        await self.broadcaster.send(
            session.session_id, "error", dict(error.to_payload(), requestType=kind)
        )

    async def _on_join_room(self, session: Session, data: Mapping[str, Any]) -> None:
        async with self._serial:
            self.registry.join(session.session_id, self.room)
            await self.broadcaster.send(
                session.session_id,
                "room-joined",
                {
                    "room": self.room,
                    "members": self.registry.connected_users(self.room),
                    "activeLocks": self.service.locks.snapshot(),
                },
            )
            await self.broadcaster.broadcast(
                "user-joined",
                dict(session.identity.to_payload(), joinedAt=isoformat(utcnow())),
                room=self.room,
                exclude=session.session_id,
            )

    async def _on_leave_room(self, session: Session, data: Mapping[str, Any]) -> None:
        if session.room != self.room or not self.registry.leave(session.session_id):
            return
        await self.broadcaster.broadcast(
            "user-left",
            {
                "userId": session.user_id,
                "displayName": session.identity.display_name,
                "reason": "left",
                "leftAt": isoformat(utcnow()),
            },
            room=self.room,
        )

    async def _on_drag_start(self, session: Session, data: Mapping[str, Any]) -> None:
        order_number = data.get("orderNumber")
        await self.start_move(
            str(_required(data, "orderId")),
            session.identity,
            order_number=str(order_number) if order_number is not None else None,
        )

    async def _on_drag_end(self, session: Session, data: Mapping[str, Any]) -> None:
        target = data.get("targetWorkCentreId", data.get("toWorkCentreId"))
        await self.end_move(
            str(_required(data, "orderId")),
            session.identity,
            completed=bool(data.get("completed", False)),
            target_work_centre_id=str(target) if target is not None else None,
            position=data.get("position"),
        )

    async def _on_order_move(self, session: Session, data: Mapping[str, Any]) -> None:
        await self.move_order(
            str(_required(data, "orderId")),
            str(_required(data, "toWorkCentreId")),
            session.identity,
            reason=str(data.get("reason") or "user_decision"),
            position=data.get("position"),
        )

    async def _on_reorder(self, session: Session, data: Mapping[str, Any]) -> None:
        await self.reorder(
            _required(data, "workCentreId"),
            data.get("orderPositions"),
            session.identity,
        )

    async def _on_order_updated(self, session: Session, data: Mapping[str, Any]) -> None:
        await self.broadcaster.broadcast(
            "order-updated",
            {
                "order": _required(data, "order"),
                "updateType": data.get("updateType") or "modified",
                "updatedBy": session.identity.display_name,
                "updatedAt": isoformat(utcnow()),
            },
            room=self.room,
        )

    async def _on_work_centre_updated(self, session: Session, data: Mapping[str, Any]) -> None:
        await self.broadcaster.send_to_all(
            "work-centre-updated",
            {
                "workCentre": _required(data, "workCentre"),
                "updateType": data.get("updateType") or "modified",
                "updatedBy": session.identity.display_name,
                "updatedAt": isoformat(utcnow()),
            },
        )

    async def _on_ping(self, session: Session, data: Mapping[str, Any]) -> None:
        await self.broadcaster.send(session.session_id, "pong", {})


__all__ = ["PlanningGateway"]
