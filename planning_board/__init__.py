"""Collaborative manufacturing planning board.

This package provides the order and work-centre model, drag locks that keep
two schedulers from moving the same order at once, queue position
reconciliation, and the realtime gateway that broadcasts board changes to
connected clients.
"""

from .domain import (
    DragLock,
    Identity,
    ManufacturingOrder,
    OrderPriority,
    OrderStatus,
    UnlockReason,
    User,
    UserRole,
    WorkCentre,
)
from .errors import (
    ConflictError,
    InvalidInputError,
    InvalidReferenceError,
    LockNotHeldError,
    PlanningBoardError,
)
from .gateway import PlanningGateway
from .locks import LockManager
from .reconciliation import ReconciliationEngine
from .services import PlanningService, WorkCentreQueue

__all__ = [
    "DragLock",
    "Identity",
    "ManufacturingOrder",
    "OrderPriority",
    "OrderStatus",
    "UnlockReason",
    "User",
    "UserRole",
    "WorkCentre",
    "ConflictError",
    "InvalidInputError",
    "InvalidReferenceError",
    "LockNotHeldError",
    "PlanningBoardError",
    "PlanningGateway",
    "LockManager",
    "ReconciliationEngine",
    "PlanningService",
    "WorkCentreQueue",
]
