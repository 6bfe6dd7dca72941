from __future__ import annotations

import pytest

from planning_board.errors import LockNotHeldError, PermissionDeniedError

from .conftest import FakeTransport

pytestmark = pytest.mark.asyncio


async def join(gateway, identity, transport=None):
    transport = transport or FakeTransport()
    session = await gateway.connect(transport, identity)
    await gateway.dispatch(session, {"type": "join-room"})
    return session, transport


async def test_connect_reports_users_and_locks(gateway, board):
    board.service.locks.acquire("42", board.bob.user_id, board.bob.display_name)
    transport = FakeTransport()

    await gateway.connect(transport, board.alice)

    (frame,) = transport.sent
    assert frame["type"] == "connection-established"
    assert frame["data"]["user"]["userId"] == "u-alice"
    assert list(frame["data"]["activeLocks"]) == ["42"]
    assert "timestamp" in frame


async def test_join_room_acknowledges_and_announces(gateway, board):
    _, alice = await join(gateway, board.alice)
    alice.clear()

    _, bob = await join(gateway, board.bob)

    assert alice.types() == ["user-joined"]
    assert alice.sent[0]["data"]["userId"] == "u-bob"
    ack = bob.events("room-joined")[0]["data"]
    assert ack["room"] == "planning_board"
    assert [member["userId"] for member in ack["members"]] == ["u-alice", "u-bob"]


async def test_conflict_goes_only_to_the_requester(gateway, board):
    alice_session, alice = await join(gateway, board.alice)
    bob_session, bob = await join(gateway, board.bob)
    alice.clear()
    bob.clear()

    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": 42}})
    await gateway.dispatch(bob_session, {"type": "drag-start", "data": {"orderId": "42"}})

    assert alice.types() == ["order-locked"]
    assert bob.types() == ["order-locked", "drag-conflict"]
    conflict = bob.events("drag-conflict")[0]["data"]
    assert conflict["orderId"] == "42"
    assert conflict["heldBy"] == "Alice"
    assert conflict["heldByUserId"] == "u-alice"
    assert board.service.locks.is_locked("42").holder_user_id == "u-alice"


async def test_completed_drag_moves_before_unlocking(gateway, board):
    alice_session, _ = await join(gateway, board.alice)
    _, bob = await join(gateway, board.bob)
    bob.clear()

    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": "A"}})
    await gateway.dispatch(
        alice_session,
        {
            "type": "drag-end",
            "data": {"orderId": "A", "completed": True, "targetWorkCentreId": board.welding_id},
        },
    )

    assert bob.types() == ["order-locked", "order-moved", "order-unlocked"]
    moved = bob.events("order-moved")[0]["data"]
    assert moved["fromWorkCentreId"] == board.laser_id
    assert moved["toWorkCentreId"] == board.welding_id
    assert moved["order"]["position"] == 3
    unlocked = bob.events("order-unlocked")[0]["data"]
    assert unlocked["reason"] == "released"
    assert unlocked["completed"] is True
    assert board.service.locks.is_locked("A") is None


async def test_cancelled_drag_only_unlocks(gateway, board):
    alice_session, alice = await join(gateway, board.alice)
    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": "A"}})
    alice.clear()

    await gateway.dispatch(
        alice_session, {"type": "drag-end", "data": {"orderId": "A", "completed": False}}
    )

    assert alice.types() == ["order-unlocked"]
    assert board.service.store.orders.get("A").work_centre_id == board.laser_id


async def test_drag_end_without_lock_is_a_targeted_error(gateway, board):
    alice_session, _ = await join(gateway, board.alice)
    bob_session, bob = await join(gateway, board.bob)
    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": "42"}})
    bob.clear()

    await gateway.dispatch(bob_session, {"type": "drag-end", "data": {"orderId": "42"}})

    assert bob.types() == ["drag-error"]
    assert bob.sent[0]["data"]["code"] == "NO_ACTIVE_LOCK"
    assert board.service.locks.is_locked("42").holder_user_id == "u-alice"


async def test_failed_move_keeps_the_lock(gateway, board):
    alice_session, alice = await join(gateway, board.alice)
    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": "A"}})
    alice.clear()

    await gateway.dispatch(
        alice_session,
        {
            "type": "drag-end",
            "data": {"orderId": "A", "completed": True, "targetWorkCentreId": "wc-missing"},
        },
    )

    assert alice.types() == ["error"]
    assert alice.sent[0]["data"]["code"] == "NOT_FOUND"
    assert alice.sent[0]["data"]["requestType"] == "drag-end"
    assert board.service.locks.is_locked("A").holder_user_id == "u-alice"


async def test_disconnect_of_last_session_releases_each_lock(gateway, board):
    alice_session, _ = await join(gateway, board.alice)
    _, bob = await join(gateway, board.bob)
    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": "A"}})
    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": "42"}})
    bob.clear()

    released = await gateway.disconnect(alice_session)

    assert [lock.order_id for lock in released] == ["42", "A"]
    assert bob.types() == ["order-unlocked", "order-unlocked", "user-left"]
    unlocked = bob.events("order-unlocked")
    assert [frame["data"]["orderId"] for frame in unlocked] == ["42", "A"]
    assert [frame["data"]["reason"] for frame in unlocked] == ["disconnect", "disconnect"]
    assert bob.events("user-left")[0]["data"]["userId"] == "u-alice"
    assert gateway.registry.get(alice_session.session_id) is None
    assert board.service.locks.active_locks() == []


async def test_disconnect_with_another_open_session_keeps_locks(gateway, board):
    first, _ = await join(gateway, board.alice)
    await join(gateway, board.alice)
    _, bob = await join(gateway, board.bob)
    await gateway.dispatch(first, {"type": "drag-start", "data": {"orderId": "A"}})
    bob.clear()

    released = await gateway.disconnect(first)

    assert released == []
    assert "order-unlocked" not in bob.types()
    assert board.service.locks.is_locked("A").holder_user_id == "u-alice"


async def test_sweeper_broadcasts_timeouts(gateway, board, clock):
    alice_session, alice = await join(gateway, board.alice)
    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": "A"}})
    alice.clear()

    clock.advance(29)
    assert await gateway.sweep_expired() == []
    clock.advance(1)
    expired = await gateway.sweep_expired()

    assert [lock.order_id for lock in expired] == ["A"]
    assert alice.types() == ["order-unlocked"]
    assert alice.sent[0]["data"]["reason"] == "timeout"


async def test_sweeper_announces_every_expired_lock(gateway, board, clock):
    alice_session, _ = await join(gateway, board.alice)
    _, bob = await join(gateway, board.bob)
    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": "A"}})
    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": "42"}})
    bob.clear()

    clock.advance(30)
    expired = await gateway.sweep_expired()

    assert [lock.order_id for lock in expired] == ["42", "A"]
    assert bob.types() == ["order-unlocked", "order-unlocked"]
    assert [frame["data"]["reason"] for frame in bob.sent] == ["timeout", "timeout"]
    assert board.service.locks.active_locks() == []


async def test_reorder_broadcasts_only_changed_orders(gateway, board):
    alice_session, alice = await join(gateway, board.alice)
    alice.clear()
    message = {
        "type": "reorder",
        "data": {
            "workCentreId": board.laser_id,
            "orderPositions": [{"orderId": "C", "position": 1}],
        },
    }

    await gateway.dispatch(alice_session, message)
    first = [frame["data"]["order"]["id"] for frame in alice.events("order-moved")]
    alice.clear()
    await gateway.dispatch(alice_session, message)

    assert first == ["C", "A", "B"]
    assert alice.sent == []


async def test_reorder_with_bad_payload_reports_error(gateway, board):
    alice_session, alice = await join(gateway, board.alice)
    alice.clear()

    await gateway.dispatch(
        alice_session,
        {"type": "reorder", "data": {"workCentreId": board.laser_id, "orderPositions": "x"}},
    )

    assert alice.types() == ["error"]
    assert alice.sent[0]["data"]["code"] == "INVALID_INPUT"


async def test_order_move_refused_while_someone_else_drags(gateway, board):
    alice_session, _ = await join(gateway, board.alice)
    bob_session, bob = await join(gateway, board.bob)
    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": "A"}})
    bob.clear()

    await gateway.dispatch(
        bob_session,
        {"type": "order-move", "data": {"orderId": "A", "toWorkCentreId": board.welding_id}},
    )

    assert bob.types() == ["drag-conflict"]
    assert board.service.store.orders.get("A").work_centre_id == board.laser_id


async def test_relays_and_ping(gateway, board):
    alice_session, alice = await join(gateway, board.alice)
    lobby = FakeTransport()
    await gateway.connect(lobby, board.bob)
    alice.clear()
    lobby.clear()

    await gateway.dispatch(
        alice_session, {"type": "order-updated", "data": {"order": {"id": "A"}}}
    )
    await gateway.dispatch(
        alice_session, {"type": "work-centre-updated", "data": {"workCentre": {"id": "x"}}}
    )
    await gateway.dispatch(alice_session, {"type": "ping"})

    assert alice.types() == ["order-updated", "work-centre-updated", "pong"]
    assert lobby.types() == ["work-centre-updated"]


async def test_unknown_and_malformed_frames(gateway, board):
    session, transport = await join(gateway, board.alice)
    transport.clear()

    await gateway.dispatch(session, {"type": "teleport"})
    await gateway.dispatch(session, ["not", "a", "frame"])
    await gateway.dispatch(session, {"type": "drag-start", "data": {}})

    assert transport.types() == ["error", "error", "error"]
    assert {frame["data"]["code"] for frame in transport.sent} == {"INVALID_INPUT"}


async def test_unexpected_failure_becomes_internal_error(gateway, board, monkeypatch):
    session, transport = await join(gateway, board.alice)
    transport.clear()

    def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(gateway.service, "start_move", explode)
    await gateway.dispatch(session, {"type": "drag-start", "data": {"orderId": "A"}})

    assert transport.types() == ["error"]
    assert transport.sent[0]["data"]["code"] == "INTERNAL_ERROR"


async def test_dead_transport_is_dropped_and_cleaned_up(gateway, board):
    alice_session, _ = await join(gateway, board.alice)
    bob_session, bob = await join(gateway, board.bob)
    await gateway.dispatch(bob_session, {"type": "drag-start", "data": {"orderId": "42"}})
    bob.fail = True

    await gateway.dispatch(alice_session, {"type": "ping"})
    await gateway.dispatch(alice_session, {"type": "drag-start", "data": {"orderId": "A"}})

    assert gateway.registry.get(bob_session.session_id) is None
    released = await gateway.disconnect(bob_session)
    assert [lock.order_id for lock in released] == ["42"]


async def test_force_unlock_is_admin_only(gateway, board):
    _, alice = await join(gateway, board.alice)
    board.service.locks.acquire("42", board.bob.user_id, board.bob.display_name)
    alice.clear()

    with pytest.raises(PermissionDeniedError):
        await gateway.force_unlock("42", board.alice)
    lock = await gateway.force_unlock("42", board.admin)

    assert lock.holder_user_id == "u-bob"
    assert alice.events("order-unlocked")[0]["data"]["reason"] == "forced"
    with pytest.raises(LockNotHeldError):
        await gateway.force_unlock("42", board.admin)
    assert board.service.audit.entries("lock_forced")


async def test_notifications_and_status(gateway, board):
    _, alice = await join(gateway, board.alice)
    bob = FakeTransport()
    await gateway.connect(bob, board.bob)
    alice.clear()
    bob.clear()

    assert await gateway.notify_user("u-bob", {"title": "Shift", "message": "Handover"}) == 1
    assert await gateway.notify_room({"title": "Board", "message": "Frozen"}) == 1

    assert bob.types() == ["notification"]
    assert alice.types() == ["notification"]
    status = gateway.board_status()
    assert status["totalConnections"] == 2
    assert status["uniqueUsers"] == 2
    assert [user["userId"] for user in status["activeUsers"]] == ["u-alice"]
    assert status["isActive"] is True
