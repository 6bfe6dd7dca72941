"""Repositories and the order storage used by the planning board."""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, Generic, Iterator, List, MutableMapping, Sequence, Tuple, TypeVar

from .domain import (
    AuditEntry,
    ManufacturingOrder,
    PositionUpdate,
    User,
    WorkCentre,
    utcnow,
)
from .errors import NotFoundError

T = TypeVar("T")


class RepositoryError(RuntimeError):
    """Base exception for repository errors."""


class DuplicateRecordError(RepositoryError):
    """Raised when attempting to insert a record that already exists."""


class RecordNotFoundError(RepositoryError, NotFoundError):
    """Raised when a requested record is missing."""


class InMemoryRepository(Generic[T]):
    """Generic repository backed by a simple dictionary."""

    def __init__(self) -> None:
        self._items: MutableMapping[str, T] = {}

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:  # pragma: no cover - convenience
        return len(self._items)

    def add(self, item_id: str, item: T) -> None:
        if item_id in self._items:
            raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
        self._items[item_id] = item

    def upsert(self, item_id: str, item: T) -> None:
        self._items[item_id] = item

    def get(self, item_id: str) -> T:
        try:
            return self._items[item_id]
        except KeyError as exc:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found") from exc

    def list(self) -> List[T]:
        return list(self._items.values())

    def __iter__(self) -> Iterator[T]:
        return iter(self._items.values())


def queue_sort_key(order: ManufacturingOrder) -> Tuple[int, str, str]:
    """Display order of cards inside one work centre."""

    return (order.position, order.order_number, order.id)


def stage_position_updates(
    orders: "InMemoryRepository[ManufacturingOrder]",
    updates: Sequence[PositionUpdate],
) -> List[ManufacturingOrder]:
    """Build updated copies for a batch without touching stored records.

    Every referenced order is resolved first so that a missing row aborts the
    batch before anything is written.
    """

    now = utcnow()
    staged: Dict[str, ManufacturingOrder] = {}
    for update in updates:
        current = staged.get(update.order_id) or orders.get(update.order_id)
        staged[update.order_id] = replace(
            current,
            work_centre_id=update.work_centre_id,
            position=update.position,
            updated_at=now,
        )
    return list(staged.values())


class PlanningStore:
    """Order and work-centre storage shared by the in-memory and SQLite backends.

    Subclasses provide the ``users``, ``work_centres``, ``orders`` and
    ``audit_log`` repositories and an atomic ``apply_position_updates``.
    """

    users: "InMemoryRepository[User]"
    work_centres: "InMemoryRepository[WorkCentre]"
    orders: "InMemoryRepository[ManufacturingOrder]"
    audit_log: "InMemoryRepository[AuditEntry]"

    def find_order(self, order_id: str) -> ManufacturingOrder:
        try:
            return self.orders.get(order_id)
        except RecordNotFoundError as exc:
            raise RecordNotFoundError(f"Order {order_id!r} not found") from exc

    def find_work_centre(self, work_centre_id: str) -> WorkCentre:
        try:
            return self.work_centres.get(work_centre_id)
        except RecordNotFoundError as exc:
            raise RecordNotFoundError(f"Work centre {work_centre_id!r} not found") from exc

    def list_work_centres(self) -> List[WorkCentre]:
        centres = [centre for centre in self.work_centres if centre.is_active]
        centres.sort(key=lambda centre: (centre.display_order, centre.name))
        return centres

    def list_orders_in_work_centre(
        self, work_centre_id: str, *, active_only: bool = False
    ) -> List[ManufacturingOrder]:
        orders = [
            order
            for order in self.orders
            if order.work_centre_id == work_centre_id
            and (order.is_active or not active_only)
        ]
        orders.sort(key=queue_sort_key)
        return orders

    def apply_position_updates(
        self, updates: Sequence[PositionUpdate]
    ) -> List[ManufacturingOrder]:  # pragma: no cover - abstract
        raise NotImplementedError


class InMemoryPlanningStore(PlanningStore):
    """Dictionary-backed store used by tests and the sample script."""

    def __init__(self) -> None:
        self.users = InMemoryRepository[User]()
        self.work_centres = InMemoryRepository[WorkCentre]()
        self.orders = InMemoryRepository[ManufacturingOrder]()
        self.audit_log = InMemoryRepository[AuditEntry]()

    def apply_position_updates(
        self, updates: Sequence[PositionUpdate]
    ) -> List[ManufacturingOrder]:
        staged = stage_position_updates(self.orders, updates)
        for order in staged:
            self.orders.upsert(order.id, order)
        return staged


__all__ = [
    "InMemoryRepository",
    "InMemoryPlanningStore",
    "PlanningStore",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "queue_sort_key",
    "stage_position_updates",
]
