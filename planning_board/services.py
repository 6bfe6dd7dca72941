"""Service layer that implements the planning board use-cases."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .audit import AuditTrail, summarize_positions
from .domain import (
    DragLock,
    Identity,
    LockResult,
    ManufacturingOrder,
    OrderPriority,
    OrderStatus,
    User,
    UserRole,
    WorkCentre,
)
from .errors import ConflictError, LockNotHeldError
from .locks import LockManager
from .reconciliation import MoveResult, ReconciliationEngine, ReconciliationResult
from .repository import InMemoryPlanningStore, PlanningStore


@dataclass(slots=True)
class WorkCentreQueue:
    """A work centre together with its ordered active orders."""

    work_centre: WorkCentre
    orders: List[ManufacturingOrder] = field(default_factory=list)

    def to_payload(self, locks: Dict[str, DragLock]) -> Dict[str, Any]:
        payload = self.work_centre.to_payload()
        payload["orders"] = [
            dict(
                order.to_payload(),
                lockedBy=locks[order.id].holder_display_name if order.id in locks else None,
            )
            for order in self.orders
        ]
        payload["currentJobs"] = len(self.orders)
        return payload


class PlanningService:
    """Facade that exposes planning board use-cases to the web and realtime layers."""

    def __init__(
        self,
        store: Optional[PlanningStore] = None,
        lock_manager: Optional[LockManager] = None,
        *,
        engine: Optional[ReconciliationEngine] = None,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        self.store = store or InMemoryPlanningStore()
        self.locks = lock_manager or LockManager()
        self.engine = engine or ReconciliationEngine(self.store)
        self.audit = audit or AuditTrail(self.store.audit_log)

    # ------------------------------------------------------------------
    # Master data
    # ------------------------------------------------------------------
    def register_user(
        self,
        username: str,
        display_name: str,
        *,
        role: UserRole = UserRole.SCHEDULER,
        user_id: Optional[str] = None,
    ) -> User:
        user = User(
            id=user_id or str(uuid4()),
            username=username,
            display_name=display_name,
            role=role,
        )
        self.store.users.add(user.id, user)
        return user

    def create_work_centre(
        self,
        name: str,
        code: str,
        *,
        capacity: int = 1,
        display_order: int = 0,
        work_centre_id: Optional[str] = None,
    ) -> WorkCentre:
        if capacity < 1:
            raise ValueError("A work centre needs a capacity of at least one")
        centre = WorkCentre(
            id=work_centre_id or str(uuid4()),
            name=name,
            code=code,
            capacity=capacity,
            display_order=display_order,
        )
        self.store.work_centres.add(centre.id, centre)
        return centre

    def create_order(
        self,
        order_number: str,
        work_centre_id: Optional[str],
        *,
        status: OrderStatus = OrderStatus.NOT_STARTED,
        priority: OrderPriority = OrderPriority.NORMAL,
        due_date: Optional[date] = None,
        description: str = "",
        order_id: Optional[str] = None,
    ) -> ManufacturingOrder:
        """Create an order at the end of its work centre queue."""

        position = 0
        if work_centre_id is not None:
            self.store.find_work_centre(work_centre_id)
            queue = self.store.list_orders_in_work_centre(work_centre_id)
            position = max((order.position for order in queue), default=0) + 1
        order = ManufacturingOrder(
            id=order_id or str(uuid4()),
            order_number=order_number,
            work_centre_id=work_centre_id,
            position=position,
            status=status,
            priority=priority,
            due_date=due_date,
            description=description,
        )
        self.store.orders.add(order.id, order)
        return order

    def get_order(self, order_id: str) -> ManufacturingOrder:
        return self.store.find_order(str(order_id))

    def work_centre_queue(self, work_centre_id: str) -> WorkCentreQueue:
        centre = self.store.find_work_centre(str(work_centre_id))
        return WorkCentreQueue(
            work_centre=centre,
            orders=self.store.list_orders_in_work_centre(centre.id, active_only=True),
        )

    def board(self) -> List[WorkCentreQueue]:
        return [
            WorkCentreQueue(
                work_centre=centre,
                orders=self.store.list_orders_in_work_centre(centre.id, active_only=True),
            )
            for centre in self.store.list_work_centres()
        ]

    # ------------------------------------------------------------------
    # Drag locks
    # ------------------------------------------------------------------
    def start_move(
        self,
        order_id: str,
        identity: Identity,
        *,
        order_number: Optional[str] = None,
    ) -> LockResult:
        order = self.get_order(order_id)
        try:
            return self.locks.acquire(
                order.id,
                identity.user_id,
                identity.display_name,
                order_number=order_number or order.order_number,
            )
        except ConflictError as exc:
            self.audit.record(
                "lock_conflict",
                user_id=identity.user_id,
                order_id=order.id,
                held_by=exc.lock.holder_user_id,
            )
            raise

    def end_move(self, order_id: str, identity: Identity) -> DragLock:
        """Release the caller's lock and return it as it was before release."""

        order_id = str(order_id)
        lock = self.locks.is_locked(order_id)
        if lock is None or lock.holder_user_id != identity.user_id:
            raise LockNotHeldError(order_id)
        if not self.locks.release(order_id, identity.user_id):
            raise LockNotHeldError(order_id)
        return lock

    def ensure_not_locked_by_other(self, order_id: str, identity: Identity) -> None:
        lock = self.locks.is_locked(str(order_id))
        if lock is not None and lock.holder_user_id != identity.user_id:
            raise ConflictError(str(order_id), lock)

    # ------------------------------------------------------------------
    # Positioning
    # ------------------------------------------------------------------
    def move_order(
        self,
        order_id: str,
        to_work_centre_id: str,
        identity: Identity,
        *,
        reason: str = "user_decision",
        position: Optional[Any] = None,
    ) -> MoveResult:
        """Move an order; the caller's own lock, if any, is left in place."""

        self.ensure_not_locked_by_other(order_id, identity)
        result = self.engine.move(order_id, to_work_centre_id, position=position)
        self.audit.record(
            "order_moved",
            user_id=identity.user_id,
            order_id=result.order.id,
            from_work_centre_id=result.from_work_centre_id,
            to_work_centre_id=result.to_work_centre_id,
            reason=reason,
            order_number=result.order.order_number,
            queue_depth_to=len(result.destination),
        )
        return result

    def reorder(
        self, work_centre_id: str, order_positions: Any, identity: Identity
    ) -> ReconciliationResult:
        result = self.engine.reorder(work_centre_id, order_positions)
        self.audit.record(
            "orders_reordered",
            user_id=identity.user_id,
            to_work_centre_id=result.work_centre_id,
            order_count=len(order_positions),
            positions=summarize_positions(result.updates),
        )
        return result


__all__ = ["PlanningService", "WorkCentreQueue"]
