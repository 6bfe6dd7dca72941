from __future__ import annotations

from dataclasses import replace

import pytest

from planning_board.domain import OrderStatus
from planning_board.errors import InvalidInputError, InvalidReferenceError, NotFoundError
from planning_board.reconciliation import plan_sequence, validate_positions

from .conftest import positions


def test_reorder_places_submitted_orders_exactly(board):
    engine = board.service.engine

    result = engine.reorder(
        board.laser_id,
        [
            {"order_id": "C", "position": 1},
            {"order_id": "A", "position": 2},
            {"order_id": "B", "position": 3},
        ],
    )

    assert result.sequence == ["C", "A", "B"]
    assert positions(board.service.store, board.laser_id) == {"A": 2, "B": 3, "C": 1}
    assert result.updated_count == 3


def test_reorder_twice_is_idempotent(board):
    engine = board.service.engine
    payload = [{"order_id": "C", "position": 1}, {"order_id": "A", "position": 2}]

    engine.reorder(board.laser_id, payload)
    before = {
        order.id: order.updated_at
        for order in board.service.store.list_orders_in_work_centre(board.laser_id)
    }
    second = engine.reorder(board.laser_id, payload)

    assert second.updated_count == 0
    assert second.sequence == ["C", "A", "B"]
    after = {
        order.id: order.updated_at
        for order in board.service.store.list_orders_in_work_centre(board.laser_id)
    }
    assert after == before


def test_partial_reorder_keeps_untouched_orders_in_relative_order(board):
    result = board.service.engine.reorder(board.laser_id, [{"orderId": "C", "position": 2}])

    assert result.sequence == ["A", "C", "B"]
    assert [update.order_id for update in result.updates] == ["C", "B"]


def test_foreign_order_is_rejected_without_writes(board):
    store = board.service.store
    before = positions(store, board.laser_id)

    with pytest.raises(InvalidReferenceError) as info:
        board.service.engine.reorder(
            board.laser_id,
            [{"order_id": "C", "position": 1}, {"order_id": "D", "position": 2}],
        )

    assert info.value.order_ids == ["D"]
    assert positions(store, board.laser_id) == before


@pytest.mark.parametrize(
    "payload",
    [
        "not-a-list",
        [{"order_id": "A"}],
        [{"position": 1}],
        [{"order_id": "A", "position": 0}],
        [{"order_id": "A", "position": -2}],
        [{"order_id": "A", "position": True}],
        [{"order_id": "A", "position": "1"}],
        [{"order_id": "A", "position": float("nan")}],
        [{"order_id": "", "position": 1}],
        [{"order_id": "A", "position": 1}, {"order_id": "A", "position": 2}],
        ["A"],
    ],
)
def test_malformed_payload_never_reaches_storage(board, monkeypatch, payload):
    def fail(updates):
        raise AssertionError("storage must not be called")

    monkeypatch.setattr(board.service.store, "apply_position_updates", fail)

    with pytest.raises(InvalidInputError):
        board.service.engine.reorder(board.laser_id, payload)


def test_unknown_work_centre(board):
    with pytest.raises(NotFoundError):
        board.service.engine.reorder("wc-missing", [{"order_id": "A", "position": 1}])


def test_inactive_orders_are_not_renumbered(board):
    store = board.service.store
    finished = replace(store.orders.get("A"), status=OrderStatus.COMPLETE)
    store.orders.upsert("A", finished)

    result = board.service.engine.reorder(board.laser_id, [{"order_id": "C", "position": 1}])

    assert result.sequence == ["C", "B"]
    assert store.orders.get("A").position == 1
    assert store.orders.get("C").position == 1
    assert store.orders.get("B").position == 2

    with pytest.raises(InvalidReferenceError):
        board.service.engine.reorder(board.laser_id, [{"order_id": "A", "position": 1}])


def test_move_across_work_centres_compacts_the_source(board):
    result = board.service.engine.move("A", board.welding_id, position=1)

    store = board.service.store
    assert result.from_work_centre_id == board.laser_id
    assert result.changed_work_centre
    assert result.order.work_centre_id == board.welding_id
    assert positions(store, board.laser_id) == {"B": 1, "C": 2}
    assert positions(store, board.welding_id) == {"A": 1, "D": 2, "42": 3}


def test_move_without_position_appends(board):
    result = board.service.engine.move("B", board.welding_id)

    assert result.order.position == 3
    assert [order.id for order in result.destination] == ["D", "42", "B"]


def test_move_within_the_same_work_centre(board):
    result = board.service.engine.move("A", board.laser_id, position=3)

    assert not result.changed_work_centre
    assert positions(board.service.store, board.laser_id) == {"B": 1, "C": 2, "A": 3}


def test_move_rejects_bad_input(board):
    with pytest.raises(InvalidInputError):
        board.service.engine.move("A", board.welding_id, position=0)
    with pytest.raises(NotFoundError):
        board.service.engine.move("missing", board.welding_id)
    with pytest.raises(NotFoundError):
        board.service.engine.move("A", "wc-missing")


def test_plan_sequence_rules():
    assert plan_sequence(["A", "B", "C", "D"], [("D", 1)]) == ["D", "A", "B", "C"]
    assert plan_sequence(["A", "B", "C"], [("A", 10)]) == ["B", "C", "A"]
    assert plan_sequence(["A", "B", "C"], [("C", 1), ("B", 1)]) == ["C", "B", "A"]
    assert plan_sequence(["A", "B", "C"], [("C", 1.5)]) == ["A", "C", "B"]
    assert plan_sequence([], [("X", 4)]) == ["X"]


def test_plan_sequence_keeps_ties_in_submission_order():
    assert plan_sequence(["A", "B", "C"], [("C", 1), ("A", 1), ("B", 1)]) == ["C", "A", "B"]
    assert plan_sequence(["A", "B", "X", "Y"], [("X", 2), ("Y", 2)]) == ["A", "X", "Y", "B"]
    assert plan_sequence(["A", "B", "C"], [("C", 1.2), ("B", 1.5)]) == ["A", "C", "B"]


def test_reorder_with_tied_positions(board):
    result = board.service.engine.reorder(
        board.laser_id,
        [
            {"order_id": "C", "position": 1},
            {"order_id": "A", "position": 1},
            {"order_id": "B", "position": 1},
        ],
    )

    assert result.sequence == ["C", "A", "B"]
    assert positions(board.service.store, board.laser_id) == {"C": 1, "A": 2, "B": 3}


def test_validate_positions_normalises_ids():
    entries = validate_positions([{"order_id": 7, "position": 2}, {"orderId": " B ", "position": 1.0}])

    assert [(entry.order_id, entry.position) for entry in entries] == [("7", 2.0), ("B", 1.0)]
