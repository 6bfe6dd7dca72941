"""Error taxonomy shared by the REST and realtime surfaces."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .domain import DragLock


class PlanningBoardError(Exception):
    """Base class for errors that are translated into a typed response."""

    code = "PLANNING_ERROR"
    status_code = 500

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""

    def details(self) -> Dict[str, Any]:
        return {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        payload.update(self.details())
        return payload


class ConflictError(PlanningBoardError):
    """Raised when another user already holds the drag lock of an order."""

    code = "ORDER_LOCKED"
    status_code = 423

    def __init__(self, order_id: str, lock: DragLock) -> None:
        super().__init__(
            f"Order {order_id} is currently being moved by {lock.holder_display_name}"
        )
        self.order_id = order_id
        self.lock = lock

    def details(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "orderNumber": self.lock.order_number,
            "lockedBy": self.lock.holder_display_name,
            "lockedByUserId": self.lock.holder_user_id,
            "lockExpiry": self.lock.to_payload()["expiry"],
        }


class LockNotHeldError(PlanningBoardError):
    code = "NO_ACTIVE_LOCK"
    status_code = 400

    def __init__(self, order_id: str) -> None:
        super().__init__(f"No active lock found for order {order_id}")
        self.order_id = order_id

    def details(self) -> Dict[str, Any]:
        return {"orderId": self.order_id}


class NotFoundError(PlanningBoardError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidReferenceError(PlanningBoardError):
    """A reorder payload names an order that is not part of the work centre."""

    code = "INVALID_REFERENCE"
    status_code = 400

    def __init__(self, message: str, order_ids: Optional[list] = None) -> None:
        super().__init__(message)
        self.order_ids = list(order_ids or [])

    def details(self) -> Dict[str, Any]:
        return {"orderIds": self.order_ids} if self.order_ids else {}


class InvalidInputError(PlanningBoardError):
    code = "INVALID_INPUT"
    status_code = 400


class AuthenticationError(PlanningBoardError):
    code = "AUTHENTICATION_FAILED"
    status_code = 401


class PermissionDeniedError(PlanningBoardError):
    code = "FORBIDDEN"
    status_code = 403


class PersistenceError(PlanningBoardError):
    """Storage failure; the batch that triggered it was rolled back."""

    code = "PERSISTENCE_FAILED"
    status_code = 500


__all__ = [
    "PlanningBoardError",
    "ConflictError",
    "LockNotHeldError",
    "NotFoundError",
    "InvalidReferenceError",
    "InvalidInputError",
    "AuthenticationError",
    "PermissionDeniedError",
    "PersistenceError",
]
