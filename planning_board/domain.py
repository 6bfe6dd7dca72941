"""Core data structures for the manufacturing planning board."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class OrderStatus(str, Enum):
    """Lifecycle stages for a manufacturing order."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    OVERDUE = "overdue"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self not in {OrderStatus.COMPLETE, OrderStatus.CANCELLED}


class OrderPriority(IntEnum):
    """Priority levels shown on the order cards."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4

    @property
    def label(self) -> str:
        return {
            OrderPriority.LOW: "Low",
            OrderPriority.NORMAL: "Normal",
            OrderPriority.HIGH: "High",
            OrderPriority.URGENT: "Urgent",
        }[self]


class UserRole(str, Enum):
    ADMIN = "admin"
    SCHEDULER = "scheduler"
    VIEWER = "viewer"


class UnlockReason(str, Enum):
    """Why a drag lock disappeared, as reported in ``order-unlocked``."""

    RELEASED = "released"
    TIMEOUT = "timeout"
    DISCONNECT = "disconnect"
    FORCED = "forced"


@dataclass(slots=True)
class User:
    """Account that may connect to the planning board."""

    id: str
    username: str
    display_name: str
    role: UserRole = UserRole.SCHEDULER
    is_active: bool = True

    def identity(self) -> "Identity":
        return Identity(user_id=self.id, display_name=self.display_name, role=self.role)


@dataclass(frozen=True, slots=True)
class Identity:
    """Resolved identity bound to a connection or request."""

    user_id: str
    display_name: str
    role: UserRole = UserRole.SCHEDULER

    def to_payload(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "role": self.role.value,
        }


@dataclass(slots=True)
class WorkCentre:
    """A column on the planning board."""

    id: str
    name: str
    code: str
    capacity: int = 1
    display_order: int = 0
    is_active: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "capacity": self.capacity,
            "displayOrder": self.display_order,
            "isActive": self.is_active,
        }


@dataclass(slots=True)
class ManufacturingOrder:
    """An order card queued at a work centre."""

    id: str
    order_number: str
    work_centre_id: Optional[str] = None
    position: int = 0
    status: OrderStatus = OrderStatus.NOT_STARTED
    priority: OrderPriority = OrderPriority.NORMAL
    due_date: Optional[date] = None
    description: str = ""
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "orderNumber": self.order_number,
            "workCentreId": self.work_centre_id,
            "position": self.position,
            "status": self.status.value,
            "priority": self.priority.label.lower(),
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "description": self.description,
            "updatedAt": isoformat(self.updated_at),
        }


@dataclass(frozen=True, slots=True)
class DragLock:
    """Short-lived exclusive claim on an order while it is being dragged."""

    order_id: str
    holder_user_id: str
    holder_display_name: str
    acquired_at: datetime
    ttl_seconds: float = 30.0
    order_number: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return self.acquired_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def refreshed(self, now: datetime, order_number: Optional[str] = None) -> "DragLock":
        return replace(
            self,
            acquired_at=now,
            order_number=order_number if order_number is not None else self.order_number,
        )

    def to_payload(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        remaining = max((self.expires_at - now).total_seconds(), 0.0)
        return {
            "orderId": self.order_id,
            "orderNumber": self.order_number,
            "holder": {
                "userId": self.holder_user_id,
                "displayName": self.holder_display_name,
            },
            "lockedBy": self.holder_display_name,
            "lockedByUserId": self.holder_user_id,
            "acquiredAt": isoformat(self.acquired_at),
            "expiry": isoformat(self.expires_at),
            "timeRemaining": int(remaining * 1000),
        }


@dataclass(frozen=True, slots=True)
class LockResult:
    """Outcome of a successful acquire."""

    lock: DragLock
    created: bool


@dataclass(frozen=True, slots=True)
class OrderPosition:
    """One validated entry of a reorder request."""

    order_id: str
    position: float


@dataclass(frozen=True, slots=True)
class PositionUpdate:
    """A single row of an atomic position batch."""

    order_id: str
    work_centre_id: str
    position: int


@dataclass(slots=True)
class AuditEntry:
    """Audit trail record for lock conflicts and completed moves."""

    id: str
    event_type: str
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    from_work_centre_id: Optional[str] = None
    to_work_centre_id: Optional[str] = None
    event_data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


__all__ = [
    "utcnow",
    "isoformat",
    "OrderStatus",
    "OrderPriority",
    "UserRole",
    "UnlockReason",
    "User",
    "Identity",
    "WorkCentre",
    "ManufacturingOrder",
    "DragLock",
    "LockResult",
    "OrderPosition",
    "PositionUpdate",
    "AuditEntry",
]
