"""SQLite-backed persistence helpers for the planning board."""

from __future__ import annotations

import pickle
import sqlite3
from typing import Generic, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from .domain import AuditEntry, ManufacturingOrder, PositionUpdate, User, WorkCentre
from .errors import PersistenceError
from .logger import get_logger
from .repository import (
    DuplicateRecordError,
    PlanningStore,
    RecordNotFoundError,
    stage_position_updates,
)

T = TypeVar("T")

logger = get_logger(__name__)


class SQLiteRepository(Generic[T]):
    """Repository implementation that persists records inside SQLite."""

    def __init__(self, connection: sqlite3.Connection, table: str) -> None:
        self._connection = connection
        self._table = table
        self._connection.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("  # nosec - static table names
            "id TEXT PRIMARY KEY, payload BLOB NOT NULL)"
        )
        self._connection.commit()

    def __contains__(self, item_id: object) -> bool:
        if not isinstance(item_id, str):
            return False
        cursor = self._connection.execute(
            f"SELECT 1 FROM {self._table} WHERE id = ? LIMIT 1", (item_id,)
        )
        return cursor.fetchone() is not None

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def __len__(self) -> int:
        cursor = self._connection.execute(f"SELECT COUNT(1) FROM {self._table}")
        value = cursor.fetchone()
        return int(value[0]) if value else 0

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    def add(self, item_id: str, item: T) -> None:
        if item_id in self:
            raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
        self._connection.execute(
            f"INSERT INTO {self._table} (id, payload) VALUES (?, ?)",
            (item_id, pickle.dumps(item)),
        )
        self._connection.commit()

    def upsert(self, item_id: str, item: T) -> None:
        self.upsert_many([(item_id, item)])
        self._connection.commit()

    def upsert_many(self, items: Iterable[Tuple[str, T]]) -> None:
        """Write several records without committing; the caller owns the transaction."""

        self._connection.executemany(
            f"INSERT INTO {self._table} (id, payload) VALUES (?, ?) "
            "ON CONFLICT(id) DO UPDATE SET payload = excluded.payload",
            ((item_id, pickle.dumps(item)) for item_id, item in items),
        )

    def get(self, item_id: str) -> T:
        cursor = self._connection.execute(
            f"SELECT payload FROM {self._table} WHERE id = ?", (item_id,)
        )
        row = cursor.fetchone()
        if row is None:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        return pickle.loads(row[0])

    def list(self) -> List[T]:
        cursor = self._connection.execute(
            f"SELECT payload FROM {self._table} ORDER BY id"
        )
        return [pickle.loads(row[0]) for row in cursor.fetchall()]


class PlanningDatabase(PlanningStore):
    """Convenience facade bundling SQLite repositories for the planning board."""

    def __init__(self, path: str) -> None:
        connection = sqlite3.connect(path, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        self._connection = connection
        self.users = SQLiteRepository[User](connection, "users")
        self.work_centres = SQLiteRepository[WorkCentre](connection, "work_centres")
        self.orders = SQLiteRepository[ManufacturingOrder](connection, "orders")
        self.audit_log = SQLiteRepository[AuditEntry](connection, "audit_log")

    def apply_position_updates(
        self, updates: Sequence[PositionUpdate]
    ) -> List[ManufacturingOrder]:
        """Write a position batch in a single transaction.

        Either every row is committed or the transaction is rolled back and a
        ``PersistenceError`` is raised.
        """

        staged = stage_position_updates(self.orders, updates)
        try:
            with self._connection:
                self.orders.upsert_many((order.id, order) for order in staged)
        except sqlite3.Error as exc:
            logger.error(
                "position_batch_failed",
                rows=len(staged),
                error=str(exc),
            )
            raise PersistenceError("Failed to persist order positions") from exc
        return staged

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "PlanningDatabase":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[BaseException],
    ) -> None:
        self.close()


__all__ = ["SQLiteRepository", "PlanningDatabase"]
