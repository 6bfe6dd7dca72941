"""FastAPI-based REST and WebSocket interface for the planning board."""

from __future__ import annotations

import asyncio
import json
from datetime import date, timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..auth import TokenIdentityProvider, bearer_token
from ..config import BoardSettings
from ..domain import Identity, OrderPriority, OrderStatus, UserRole, isoformat, utcnow
from ..errors import AuthenticationError, InvalidInputError, PlanningBoardError
from ..gateway import PlanningGateway
from ..locks import LockManager
from ..logger import get_logger, setup_logging
from ..realtime import envelope
from ..services import PlanningService
from ..storage import PlanningDatabase

logger = get_logger(__name__)

WS_AUTH_FAILED = 4401


class StartMoveRequest(BaseModel):
    orderNumber: Optional[str] = None


class EndMoveRequest(BaseModel):
    completed: bool = False
    targetWorkCentreId: Optional[str] = None
    position: Optional[float] = None


class MoveRequest(BaseModel):
    to_work_centre_id: str
    reason: str = "user_decision"
    position: Optional[float] = None


class NotificationRequest(BaseModel):
    title: str
    message: str
    level: str = "info"
    userId: Optional[str] = None


def current_identity(request: Request) -> Identity:
    identities: TokenIdentityProvider = request.app.state.identities
    return identities.resolve(bearer_token(request.headers.get("authorization")))


async def read_credential(websocket: WebSocket) -> str:
    """Wait for the ``authenticate`` frame of a socket that came without a token."""

    text = await websocket.receive_text()
    try:
        message = json.loads(text)
    except ValueError as exc:
        raise AuthenticationError("Authentication token required") from exc
    if not isinstance(message, dict) or message.get("type") != "authenticate":
        raise AuthenticationError("Authentication token required")
    data = message.get("data") or {}
    token = data.get("token") if isinstance(data, dict) else None
    if not isinstance(token, str) or not token:
        raise AuthenticationError("Authentication token required")
    return token


def create_app(settings: Optional[BoardSettings] = None) -> FastAPI:
    settings = settings or BoardSettings()
    setup_logging(settings.log_level, settings.log_format)

    database = PlanningDatabase(settings.database_path)
    service = PlanningService(
        database, LockManager(ttl_seconds=settings.lock_ttl_seconds)
    )
    if settings.seed_demo_data:
        ensure_demo_data(service)
    identities = TokenIdentityProvider(database.users, settings.static_tokens)
    gateway = PlanningGateway(service, identities, room=settings.room)

    app = FastAPI(title="Manufacturing Planning Board")
    app.state.settings = settings
    app.state.database = database
    app.state.planning_service = service
    app.state.identities = identities
    app.state.gateway = gateway
    app.state.sweeper = None

    @app.on_event("startup")
    async def startup_event() -> None:  # pragma: no cover - framework hook
        app.state.sweeper = asyncio.create_task(
            gateway.run_sweeper(settings.sweep_interval_seconds)
        )
        logger.info(
            "planning_board_started",
            database_path=settings.database_path,
            lock_ttl_seconds=settings.lock_ttl_seconds,
            room=settings.room,
        )

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - framework hook
        sweeper = app.state.sweeper
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        database.close()

    @app.exception_handler(PlanningBoardError)
    async def planning_error_handler(request: Request, exc: PlanningBoardError):
        if exc.status_code >= 500:
            logger.error(
                "request_failed", path=request.url.path, code=exc.code, error=exc.message
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("request_crashed", path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
        )

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "connections": len(gateway.registry),
            "activeLocks": len(service.locks.active_locks()),
            "timestamp": isoformat(utcnow()),
        }

    @app.get("/api/board")
    async def board(identity: Identity = Depends(current_identity)):
        locks = {lock.order_id: lock for lock in service.locks.active_locks()}
        return {
            "workCentres": [queue.to_payload(locks) for queue in service.board()],
            "activeLocks": service.locks.snapshot(),
        }

    @app.get("/api/work-centres/{work_centre_id}/orders")
    async def work_centre_orders(
        work_centre_id: str, identity: Identity = Depends(current_identity)
    ):
        locks = {lock.order_id: lock for lock in service.locks.active_locks()}
        return service.work_centre_queue(work_centre_id).to_payload(locks)

    @app.get("/api/orders/{order_id}")
    async def order_detail(order_id: str, identity: Identity = Depends(current_identity)):
        order = service.get_order(order_id)
        lock = service.locks.is_locked(order.id)
        payload = order.to_payload()
        payload["lock"] = lock.to_payload(service.locks.now()) if lock else None
        return payload

    @app.post("/api/orders/{order_id}/start-move")
    async def start_move(
        order_id: str,
        payload: Optional[StartMoveRequest] = None,
        identity: Identity = Depends(current_identity),
    ):
        result = await gateway.start_move(
            order_id,
            identity,
            order_number=payload.orderNumber if payload else None,
        )
        return {
            "message": "Order locked for moving",
            "orderId": result.lock.order_id,
            "orderNumber": result.lock.order_number,
            "lockedBy": result.lock.holder_display_name,
            "lockExpiry": isoformat(result.lock.expires_at),
            "refreshed": not result.created,
        }

    @app.post("/api/orders/{order_id}/end-move")
    async def end_move(
        order_id: str,
        payload: Optional[EndMoveRequest] = None,
        identity: Identity = Depends(current_identity),
    ):
        payload = payload or EndMoveRequest()
        lock, move = await gateway.end_move(
            order_id,
            identity,
            completed=payload.completed,
            target_work_centre_id=payload.targetWorkCentreId,
            position=payload.position,
        )
        return {
            "message": "Order move completed" if payload.completed else "Order move cancelled",
            "orderId": lock.order_id,
            "completed": payload.completed,
            "order": move.order.to_payload() if move else None,
        }

    @app.put("/api/orders/{order_id}/move")
    async def move_order(
        order_id: str,
        payload: MoveRequest,
        identity: Identity = Depends(current_identity),
    ):
        result = await gateway.move_order(
            order_id,
            payload.to_work_centre_id,
            identity,
            reason=payload.reason,
            position=payload.position,
        )
        return {
            "message": "Order moved successfully",
            "order": result.order.to_payload(),
            "fromWorkCentreId": result.from_work_centre_id,
            "toWorkCentreId": result.to_work_centre_id,
        }

    @app.post("/api/orders/reorder")
    async def reorder_orders(
        request: Request, identity: Identity = Depends(current_identity)
    ):
        try:
            body = await request.json()
        except ValueError as exc:
            raise InvalidInputError("Request body must be JSON") from exc
        if not isinstance(body, dict):
            raise InvalidInputError("work_centre_id and order_positions array are required")
        work_centre_id = body.get("work_centre_id")
        order_positions = body.get("order_positions")
        if work_centre_id is None or not isinstance(order_positions, list):
            raise InvalidInputError("work_centre_id and order_positions array are required")
        result = await gateway.reorder(str(work_centre_id), order_positions, identity)
        return {
            "message": "Orders reordered successfully",
            "work_centre_id": result.work_centre_id,
            "updated_count": result.updated_count,
            "positions": result.positions(),
        }

    @app.get("/api/locks")
    async def list_locks(identity: Identity = Depends(current_identity)):
        now = service.locks.now()
        locks = [lock.to_payload(now) for lock in service.locks.active_locks()]
        return {"locks": locks, "count": len(locks)}

    @app.delete("/api/locks/{order_id}")
    async def clear_lock(order_id: str, identity: Identity = Depends(current_identity)):
        lock = await gateway.force_unlock(order_id, identity)
        return {
            "message": "Lock cleared",
            "orderId": lock.order_id,
            "previousHolder": lock.holder_display_name,
        }

    @app.get("/api/realtime/status")
    async def realtime_status(identity: Identity = Depends(current_identity)):
        return gateway.board_status()

    @app.post("/api/realtime/notifications")
    async def send_notification(
        payload: NotificationRequest, identity: Identity = Depends(current_identity)
    ):
        notification: Dict[str, Any] = {
            "title": payload.title,
            "message": payload.message,
            "level": payload.level,
            "sentBy": identity.display_name,
        }
        if payload.userId:
            delivered = await gateway.notify_user(payload.userId, notification)
        else:
            delivered = await gateway.notify_room(notification)
        return {"delivered": delivered}

    @app.websocket("/ws")
    async def planning_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        credential = websocket.query_params.get("token") or bearer_token(
            websocket.headers.get("authorization")
        )
        try:
            if not credential:
                credential = await read_credential(websocket)
            identity = gateway.authenticate(credential)
        except AuthenticationError as exc:
            logger.info("realtime_auth_failed", error=exc.message)
            await websocket.send_json(envelope("error", exc.to_payload()))
            await websocket.close(code=WS_AUTH_FAILED)
            return
        except WebSocketDisconnect:
            return

        session = await gateway.connect(websocket, identity)
        reason = "transport closed"
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    message = json.loads(text)
                except ValueError:
                    await gateway.broadcaster.send(
                        session.session_id,
                        "error",
                        InvalidInputError("Frames must be JSON objects").to_payload(),
                    )
                    continue
                await gateway.dispatch(session, message)
        except WebSocketDisconnect as exc:
            reason = f"closed ({exc.code})"
        finally:
            await gateway.disconnect(session, reason)

    return app


def ensure_demo_data(service: PlanningService) -> None:
    if len(service.store.work_centres) > 0:
        return

    service.register_user("admin", "Sabine Hartmann", role=UserRole.ADMIN)
    service.register_user("planner", "Peter König", role=UserRole.SCHEDULER)
    service.register_user("scheduler", "Anja Krüger", role=UserRole.SCHEDULER)
    service.register_user("viewer", "Shopfloor Display", role=UserRole.VIEWER)

    centres = [
        service.create_work_centre("Laser Cutting", "LC-01", capacity=2, display_order=1),
        service.create_work_centre("Bending", "BND-01", capacity=1, display_order=2),
        service.create_work_centre("CNC Milling", "CNC-01", capacity=2, display_order=3),
        service.create_work_centre("Welding", "WLD-01", capacity=3, display_order=4),
        service.create_work_centre("Assembly", "ASM-01", capacity=4, display_order=5),
    ]

    orders = [
        ("MO-2024-001", 0, OrderPriority.HIGH, OrderStatus.IN_PROGRESS, 3, "Machine frame side panels"),
        ("MO-2024-002", 0, OrderPriority.NORMAL, OrderStatus.NOT_STARTED, 6, "Guard sheet set"),
        ("MO-2024-003", 1, OrderPriority.NORMAL, OrderStatus.NOT_STARTED, 7, "Cable duct brackets"),
        ("MO-2024-004", 2, OrderPriority.URGENT, OrderStatus.IN_PROGRESS, 2, "Spindle housing"),
        ("MO-2024-005", 2, OrderPriority.LOW, OrderStatus.ON_HOLD, 21, "Spare clamping jaws"),
        ("MO-2024-006", 3, OrderPriority.HIGH, OrderStatus.NOT_STARTED, 5, "Base frame weldment"),
        ("MO-2024-007", 4, OrderPriority.NORMAL, OrderStatus.NOT_STARTED, 14, "Final assembly line 2"),
    ]
    for number, centre_index, priority, status, due_in_days, description in orders:
        service.create_order(
            number,
            centres[centre_index].id,
            status=status,
            priority=priority,
            due_date=date.today() + timedelta(days=due_in_days),
            description=description,
        )
