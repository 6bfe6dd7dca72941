"""Fire-and-forget audit trail for lock conflicts and completed moves."""

from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from .domain import AuditEntry
from .logger import get_logger

logger = get_logger(__name__)


class AuditTrail:
    """Writes ``AuditEntry`` records; a failing sink never fails the caller."""

    def __init__(self, repository) -> None:
        self._repository = repository

    def record(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        order_id: Optional[str] = None,
        from_work_centre_id: Optional[str] = None,
        to_work_centre_id: Optional[str] = None,
        **event_data: Any,
    ) -> Optional[AuditEntry]:
        entry = AuditEntry(
            id=str(uuid4()),
            event_type=event_type,
            user_id=user_id,
            order_id=order_id,
            from_work_centre_id=from_work_centre_id,
            to_work_centre_id=to_work_centre_id,
            event_data=dict(event_data),
        )
        try:
            self._repository.add(entry.id, entry)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "audit_write_failed",
                event_type=event_type,
                order_id=order_id,
                error=str(exc),
            )
            return None
        return entry

    def entries(self, event_type: Optional[str] = None) -> list:
        entries = sorted(self._repository.list(), key=lambda entry: entry.created_at)
        if event_type is None:
            return entries
        return [entry for entry in entries if entry.event_type == event_type]


def summarize_positions(positions) -> Dict[str, int]:
    return {update.order_id: update.position for update in positions}


__all__ = ["AuditTrail", "summarize_positions"]
