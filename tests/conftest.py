from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from planning_board.auth import TokenIdentityProvider
from planning_board.domain import Identity, UserRole
from planning_board.gateway import PlanningGateway
from planning_board.locks import LockManager
from planning_board.repository import InMemoryPlanningStore, PlanningStore
from planning_board.services import PlanningService


class FakeClock:
    def __init__(self) -> None:
        self.current = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeTransport:
    """Records every frame; optionally fails like a dead socket."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed: Optional[int] = None
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = code

    def events(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        return [frame for frame in self.sent if kind is None or frame["type"] == kind]

    def types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]

    def clear(self) -> None:
        self.sent.clear()


@dataclass
class SeededBoard:
    service: PlanningService
    alice: Identity
    bob: Identity
    admin: Identity
    laser_id: str
    welding_id: str


def seed_board(service: PlanningService) -> SeededBoard:
    alice = service.register_user("alice", "Alice", user_id="u-alice")
    bob = service.register_user("bob", "Bob", user_id="u-bob")
    admin = service.register_user(
        "admin", "Administrator", role=UserRole.ADMIN, user_id="u-admin"
    )
    laser = service.create_work_centre(
        "Laser Cutting", "LC-01", display_order=1, work_centre_id="wc-laser"
    )
    welding = service.create_work_centre(
        "Welding", "WLD-01", display_order=2, work_centre_id="wc-welding"
    )
    for order_id in ("A", "B", "C"):
        service.create_order(f"MO-{order_id}", laser.id, order_id=order_id)
    service.create_order("MO-D", welding.id, order_id="D")
    service.create_order("MO-42", welding.id, order_id="42")
    return SeededBoard(
        service=service,
        alice=alice.identity(),
        bob=bob.identity(),
        admin=admin.identity(),
        laser_id=laser.id,
        welding_id=welding.id,
    )


def positions(store: PlanningStore, work_centre_id: str) -> Dict[str, int]:
    return {
        order.id: order.position
        for order in store.list_orders_in_work_centre(work_centre_id)
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lock_manager(clock: FakeClock) -> LockManager:
    return LockManager(ttl_seconds=30.0, clock=clock)


@pytest.fixture
def store() -> InMemoryPlanningStore:
    return InMemoryPlanningStore()


@pytest.fixture
def board(store: InMemoryPlanningStore, lock_manager: LockManager) -> SeededBoard:
    return seed_board(PlanningService(store, lock_manager))


@pytest.fixture
def gateway(board: SeededBoard) -> PlanningGateway:
    identities = TokenIdentityProvider(board.service.store.users)
    return PlanningGateway(board.service, identities)
