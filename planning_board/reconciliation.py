"""Position reconciliation for the order queue of a work centre.

Every reorder or move recomputes dense integer positions (1..n) for the
active orders of the affected work centres and writes them through one
atomic batch of the storage collaborator. Orders that are not mentioned in a
request keep their relative order; the mentioned orders land exactly where
the request put them.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .domain import ManufacturingOrder, OrderPosition, PositionUpdate
from .errors import InvalidInputError, InvalidReferenceError
from .logger import get_logger
from .repository import PlanningStore

logger = get_logger(__name__)


@dataclass(slots=True)
class ReconciliationResult:
    """Final queue of a work centre after a reorder."""

    work_centre_id: str
    sequence: List[str]
    updates: List[PositionUpdate] = field(default_factory=list)
    orders: List[ManufacturingOrder] = field(default_factory=list)

    @property
    def updated_count(self) -> int:
        return len(self.updates)

    def positions(self) -> Dict[str, int]:
        return {order_id: index for index, order_id in enumerate(self.sequence, start=1)}


@dataclass(slots=True)
class MoveResult:
    """Outcome of moving one order, possibly across work centres."""

    order: ManufacturingOrder
    from_work_centre_id: Optional[str]
    to_work_centre_id: str
    updates: List[PositionUpdate] = field(default_factory=list)
    destination: List[ManufacturingOrder] = field(default_factory=list)

    @property
    def changed_work_centre(self) -> bool:
        return self.from_work_centre_id != self.to_work_centre_id


def _coerce_order_id(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _coerce_position(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, Real):
        return None
    position = float(value)
    if not math.isfinite(position) or position <= 0:
        return None
    return position


def validate_positions(payload: Any) -> List[OrderPosition]:
    """Check a reorder payload and normalise it.

    Raises ``InvalidInputError`` for anything that is not a list of
    ``{"order_id": ..., "position": <positive number>}`` entries with
    distinct ids.
    """

    if not isinstance(payload, (list, tuple)):
        raise InvalidInputError("order_positions must be a list")
    entries: List[OrderPosition] = []
    seen = set()
    for index, raw in enumerate(payload):
        if isinstance(raw, OrderPosition):
            entries.append(raw)
            seen.add(raw.order_id)
            continue
        if not isinstance(raw, Mapping):
            raise InvalidInputError(f"Entry {index} must be an object")
        order_id = _coerce_order_id(raw.get("order_id", raw.get("orderId")))
        position = _coerce_position(raw.get("position"))
        if order_id is None or position is None:
            raise InvalidInputError("Each position must have order_id and position")
        if order_id in seen:
            raise InvalidInputError(f"Order {order_id} appears more than once")
        seen.add(order_id)
        entries.append(OrderPosition(order_id=order_id, position=position))
    return entries


def plan_sequence(
    current: Sequence[str], placements: Iterable[Tuple[str, float]]
) -> List[str]:
    """Return the new queue order.

    ``current`` is the existing queue; ``placements`` are ``(order_id,
    desired_position)`` pairs. Placed orders are removed from the queue and
    inserted by ascending desired position (ties keep submission order);
    positions past the end append. Each placed order lands after the one
    ranked before it, so equal positions form a run in submission order.
    """

    placements = list(placements)
    placed = {order_id for order_id, _ in placements}
    sequence = [order_id for order_id in current if order_id not in placed]
    ranked = sorted(enumerate(placements), key=lambda item: (item[1][1], item[0]))
    previous = -1
    for _, (order_id, position) in ranked:
        index = max(int(math.ceil(position)) - 1, previous + 1, 0)
        index = min(index, len(sequence))
        sequence.insert(index, order_id)
        previous = index
    return sequence


def _diff(
    sequence: Sequence[str],
    orders: Mapping[str, ManufacturingOrder],
    work_centre_id: str,
) -> List[PositionUpdate]:
    updates: List[PositionUpdate] = []
    for position, order_id in enumerate(sequence, start=1):
        order = orders[order_id]
        if order.position != position or order.work_centre_id != work_centre_id:
            updates.append(
                PositionUpdate(
                    order_id=order_id, work_centre_id=work_centre_id, position=position
                )
            )
    return updates


class ReconciliationEngine:
    """Recompute and persist queue positions, all or nothing."""

    def __init__(self, store: PlanningStore) -> None:
        self._store = store
        self._mutex = threading.Lock()

    def reorder(
        self, work_centre_id: str, order_positions: Any
    ) -> ReconciliationResult:
        entries = validate_positions(order_positions)
        if _coerce_order_id(work_centre_id) is None:
            raise InvalidInputError("work_centre_id is required")
        work_centre_id = str(work_centre_id)

        with self._mutex:
            self._store.find_work_centre(work_centre_id)
            queue = self._store.list_orders_in_work_centre(
                work_centre_id, active_only=True
            )
            by_id = {order.id: order for order in queue}
            foreign = [entry.order_id for entry in entries if entry.order_id not in by_id]
            if foreign:
                raise InvalidReferenceError(
                    f"Orders {', '.join(foreign)} do not belong to work centre "
                    f"{work_centre_id}",
                    order_ids=foreign,
                )
            sequence = plan_sequence(
                [order.id for order in queue],
                [(entry.order_id, entry.position) for entry in entries],
            )
            updates = _diff(sequence, by_id, work_centre_id)
            if updates:
                for order in self._store.apply_position_updates(updates):
                    by_id[order.id] = order

        logger.info(
            "work_centre_reconciled",
            work_centre_id=work_centre_id,
            requested=len(entries),
            updated=len(updates),
        )
        return ReconciliationResult(
            work_centre_id=work_centre_id,
            sequence=sequence,
            updates=updates,
            orders=[by_id[order_id] for order_id in sequence],
        )

    def move(
        self,
        order_id: str,
        to_work_centre_id: str,
        *,
        position: Optional[Any] = None,
    ) -> MoveResult:
        order_id = str(order_id)
        target_position: Optional[float] = None
        if position is not None:
            target_position = _coerce_position(position)
            if target_position is None:
                raise InvalidInputError("position must be a positive number")
        if _coerce_order_id(to_work_centre_id) is None:
            raise InvalidInputError("to_work_centre_id is required")
        to_work_centre_id = str(to_work_centre_id)

        with self._mutex:
            order = self._store.find_order(order_id)
            self._store.find_work_centre(to_work_centre_id)
            from_work_centre_id = order.work_centre_id

            updates: List[PositionUpdate] = []
            if from_work_centre_id and from_work_centre_id != to_work_centre_id:
                source = [
                    candidate
                    for candidate in self._store.list_orders_in_work_centre(
                        from_work_centre_id, active_only=True
                    )
                    if candidate.id != order_id
                ]
                updates.extend(
                    _diff(
                        [candidate.id for candidate in source],
                        {candidate.id: candidate for candidate in source},
                        from_work_centre_id,
                    )
                )

            destination = [
                candidate
                for candidate in self._store.list_orders_in_work_centre(
                    to_work_centre_id, active_only=True
                )
                if candidate.id != order_id
            ]
            by_id = {candidate.id: candidate for candidate in destination}
            by_id[order_id] = order
            if target_position is None:
                target_position = float(len(destination) + 1)
            sequence = plan_sequence(
                [candidate.id for candidate in destination],
                [(order_id, target_position)],
            )
            updates.extend(_diff(sequence, by_id, to_work_centre_id))
            if updates:
                for applied in self._store.apply_position_updates(updates):
                    if applied.id in by_id:
                        by_id[applied.id] = applied

        logger.info(
            "order_moved",
            order_id=order_id,
            from_work_centre_id=from_work_centre_id,
            to_work_centre_id=to_work_centre_id,
            updated=len(updates),
        )
        return MoveResult(
            order=by_id[order_id],
            from_work_centre_id=from_work_centre_id,
            to_work_centre_id=to_work_centre_id,
            updates=updates,
            destination=[by_id[candidate_id] for candidate_id in sequence],
        )


__all__ = [
    "ReconciliationEngine",
    "ReconciliationResult",
    "MoveResult",
    "plan_sequence",
    "validate_positions",
]
