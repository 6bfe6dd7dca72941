"""In-memory drag locks that stop two schedulers moving the same order.

Locks live only in this process and only for the length of one drag gesture.
The ``LockStore`` is a plain container; all policy (conflicts, ownership,
expiry) sits in ``LockManager``, which serialises every mutation behind a
single mutex so that concurrent acquire attempts resolve to exactly one
winner.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional

from .config import DEFAULT_LOCK_TTL_SECONDS
from .domain import DragLock, LockResult, utcnow
from .errors import ConflictError, LockNotHeldError
from .logger import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class LockStore:
    """Registry mapping an order id to its current lock, in insertion order."""

    def __init__(self) -> None:
        self._locks: Dict[str, DragLock] = {}

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._locks

    def __len__(self) -> int:
        return len(self._locks)

    def __iter__(self) -> Iterator[DragLock]:
        return iter(list(self._locks.values()))

    def get(self, order_id: str) -> Optional[DragLock]:
        return self._locks.get(order_id)

    def put(self, lock: DragLock) -> None:
        self._locks[lock.order_id] = lock

    def remove(self, order_id: str) -> Optional[DragLock]:
        return self._locks.pop(order_id, None)

    def values(self) -> List[DragLock]:
        return list(self._locks.values())

    def pop_expired(self, now: datetime) -> List[DragLock]:
        expired = [lock for lock in self._locks.values() if lock.is_expired(now)]
        for lock in expired:
            del self._locks[lock.order_id]
        return expired


def sort_locks(locks: List[DragLock]) -> List[DragLock]:
    """Deterministic listing order: oldest acquisition first, then order id."""

    return sorted(locks, key=lambda lock: (lock.acquired_at, lock.order_id))


class LockManager:
    """Acquire, renew, release and expire drag locks."""

    def __init__(
        self,
        store: Optional[LockStore] = None,
        *,
        ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
        clock: Optional[Clock] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("Lock TTL must be positive")
        self._store = store if store is not None else LockStore()
        self._ttl_seconds = ttl_seconds
        self._clock = clock or utcnow
        self._mutex = threading.RLock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def now(self) -> datetime:
        return self._clock()

    def _live(self, order_id: str, now: datetime) -> Optional[DragLock]:
        lock = self._store.get(order_id)
        if lock is None or lock.is_expired(now):
            return None
        return lock

    # ------------------------------------------------------------------
    # Lock lifecycle
    # ------------------------------------------------------------------
    def acquire(
        self,
        order_id: str,
        user_id: str,
        display_name: str,
        *,
        order_number: Optional[str] = None,
    ) -> LockResult:
        """Claim ``order_id`` for ``user_id`` or raise ``ConflictError``.

        Re-acquiring a lock the user already holds refreshes its TTL instead
        of creating a second lock.
        """

        order_id = str(order_id)
        with self._mutex:
            now = self._clock()
            current = self._live(order_id, now)
            if current is not None:
                if current.holder_user_id != user_id:
                    logger.info(
                        "drag_lock_conflict",
                        order_id=order_id,
                        user_id=user_id,
                        held_by=current.holder_user_id,
                    )
                    raise ConflictError(order_id, current)
                refreshed = current.refreshed(now, order_number)
                self._store.put(refreshed)
                logger.debug("drag_lock_refreshed", order_id=order_id, user_id=user_id)
                return LockResult(lock=refreshed, created=False)
            lock = DragLock(
                order_id=order_id,
                holder_user_id=user_id,
                holder_display_name=display_name,
                acquired_at=now,
                ttl_seconds=self._ttl_seconds,
                order_number=order_number,
            )
            self._store.put(lock)
        logger.info("drag_lock_acquired", order_id=order_id, user_id=user_id)
        return LockResult(lock=lock, created=True)

    def renew(self, order_id: str, user_id: str) -> DragLock:
        order_id = str(order_id)
        with self._mutex:
            now = self._clock()
            current = self._live(order_id, now)
            if current is None:
                raise LockNotHeldError(order_id)
            if current.holder_user_id != user_id:
                raise ConflictError(order_id, current)
            refreshed = current.refreshed(now)
            self._store.put(refreshed)
            return refreshed

    def release(self, order_id: str, user_id: str) -> bool:
        """Remove the caller's lock; other users' locks are never touched."""

        order_id = str(order_id)
        with self._mutex:
            current = self._live(order_id, self._clock())
            if current is None or current.holder_user_id != user_id:
                return False
            self._store.remove(order_id)
        logger.info("drag_lock_released", order_id=order_id, user_id=user_id)
        return True

    def is_locked(self, order_id: str) -> Optional[DragLock]:
        with self._mutex:
            return self._live(str(order_id), self._clock())

    def force_expire(self, order_id: str) -> Optional[DragLock]:
        order_id = str(order_id)
        with self._mutex:
            current = self._live(order_id, self._clock())
            if current is None:
                return None
            self._store.remove(order_id)
        logger.warning(
            "drag_lock_forced", order_id=order_id, held_by=current.holder_user_id
        )
        return current

    def expire_sweep(self) -> List[DragLock]:
        """Remove and return every lock whose TTL has passed."""

        with self._mutex:
            expired = self._store.pop_expired(self._clock())
        for lock in expired:
            logger.info(
                "drag_lock_expired",
                order_id=lock.order_id,
                user_id=lock.holder_user_id,
            )
        return sort_locks(expired)

    def release_all_for_user(self, user_id: str) -> List[DragLock]:
        with self._mutex:
            now = self._clock()
            owned = [
                lock
                for lock in self._store.values()
                if lock.holder_user_id == user_id and not lock.is_expired(now)
            ]
            for lock in owned:
                self._store.remove(lock.order_id)
        if owned:
            logger.info("drag_locks_released_for_user", user_id=user_id, count=len(owned))
        return sort_locks(owned)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------
    def active_locks(self) -> List[DragLock]:
        with self._mutex:
            now = self._clock()
            return sort_locks(
                [lock for lock in self._store.values() if not lock.is_expired(now)]
            )

    def snapshot(self) -> Dict[str, Dict]:
        now = self._clock()
        return {lock.order_id: lock.to_payload(now) for lock in self.active_locks()}


__all__ = ["LockStore", "LockManager", "sort_locks", "Clock"]
