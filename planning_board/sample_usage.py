"""Demonstration script for the planning board service layer."""

from __future__ import annotations

from datetime import date, timedelta
from pprint import pprint

from . import ConflictError, OrderPriority, PlanningService, UserRole
from .logger import setup_logging


def main() -> None:
    setup_logging("WARNING")
    board = PlanningService()

    # Stammdaten
    alice = board.register_user("alice", "Alice", role=UserRole.SCHEDULER).identity()
    bob = board.register_user("bob", "Bob", role=UserRole.SCHEDULER).identity()

    laser = board.create_work_centre("Laser Cutting", "LC-01", display_order=1)
    welding = board.create_work_centre("Welding", "WLD-01", display_order=2)

    frame = board.create_order(
        "MO-1001",
        laser.id,
        priority=OrderPriority.HIGH,
        due_date=date.today() + timedelta(days=5),
        description="Machine frame",
    )
    guard = board.create_order("MO-1002", laser.id, description="Guard panels")
    bracket = board.create_order("MO-1003", laser.id, description="Brackets")

    # Drag & Drop
    board.start_move(frame.id, alice)
    try:
        board.start_move(frame.id, bob)
    except ConflictError as exc:
        print("Konflikt:", exc.message)

    moved = board.move_order(frame.id, welding.id, alice, reason="capacity")
    board.end_move(frame.id, alice)
    print(f"{moved.order.order_number} now at position {moved.order.position} in Welding")

    # Reihenfolge
    result = board.reorder(
        laser.id,
        [{"order_id": bracket.id, "position": 1}, {"order_id": guard.id, "position": 2}],
        bob,
    )
    pprint(result.positions())

    print("\nBoard:")
    for queue in board.board():
        pprint(queue.to_payload({}))

    print("\nAudit:")
    for entry in board.audit.entries():
        print(entry.event_type, entry.order_id, entry.event_data)


if __name__ == "__main__":
    main()
