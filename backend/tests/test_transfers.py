import pytest

from backend.app.db.models.core_types import MovementSource, TransferStatus
from backend.app.schemas.transfer import TransferCreate, TransferLineCreate
from backend.services.errors import InsufficientStockError, InvalidStateError, NotFoundError, ValidationError


def _create(coordinator, lines, from_location="JHB", to_location="CT", order_id=None):
    return coordinator.create_transfer(
        TransferCreate(
            from_location=from_location,
            to_location=to_location,
            order_id=order_id,
            lines=[TransferLineCreate(product_id=pid, quantity=qty) for pid, qty in lines],
        ),
        "planner-1",
    )


def test_two_phase_transfer_end_to_end(coordinator, stock_up):
    """
    GIVEN SKU-2 @ JHB = 20, @ CT = 0
    WHEN  transfert de 5 : ship, réception de 5, complete
    THEN  JHB = 15, CT = 5, statut RECEIVED
    """
    stock_up("JHB", {"SKU-2": 20})
    tr = _create(coordinator, [("SKU-2", 5)])
    assert tr.status == TransferStatus.pending
    assert tr.transfer_number.startswith("TR-")

    shipped = coordinator.ship_transfer(tr.id, "shipper-1")
    assert shipped.status == TransferStatus.in_transit
    assert coordinator.get_stock_level("SKU-2", "JHB").qty_on_hand == 15
    # en transit : compté nulle part
    assert coordinator.get_stock_level("SKU-2", "CT").qty_on_hand == 0

    line_id = shipped.lines[0].id
    received = coordinator.record_receipt(tr.id, line_id, 5, "receiver-1")
    assert received.lines[0].received_quantity == 5
    assert coordinator.get_stock_level("SKU-2", "CT").qty_on_hand == 5

    done = coordinator.complete_transfer(tr.id, "receiver-1")
    assert done.status == TransferStatus.received
    assert done.received_by == "receiver-1"

    ship_mv = coordinator.list_movements(source_id=tr.id, source_type=MovementSource.transfer_ship)
    recv_mv = coordinator.list_movements(source_id=tr.id, source_type=MovementSource.transfer_receive)
    assert [m.delta_quantity for m in ship_mv.items] == [-5]
    assert [m.delta_quantity for m in recv_mv.items] == [5]


def test_ship_checks_every_line_and_is_all_or_nothing(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 3, "SKU-2": 10})
    tr = _create(coordinator, [("SKU-2", 4), ("SKU-1", 5), ("SKU-3", 1)])

    with pytest.raises(InsufficientStockError) as exc:
        coordinator.ship_transfer(tr.id, "shipper-1")

    short = {s["product_id"]: s for s in exc.value.shortages}
    assert set(short) == {"SKU-1", "SKU-3"}
    assert short["SKU-1"]["on_hand"] == 3
    assert short["SKU-1"]["requested"] == 5

    assert coordinator.get_transfer(tr.id).status == TransferStatus.pending
    assert coordinator.get_stock_level("SKU-2", "JHB").qty_on_hand == 10


def test_ship_aggregates_lines_of_same_product(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 6})
    tr = _create(coordinator, [("SKU-1", 4), ("SKU-1", 4)])

    with pytest.raises(InsufficientStockError) as exc:
        coordinator.ship_transfer(tr.id, "shipper-1")

    assert exc.value.shortages == [{"product_id": "SKU-1", "location": "JHB", "on_hand": 6, "requested": 8}]


def test_ship_twice_is_invalid_state(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 6})
    tr = _create(coordinator, [("SKU-1", 2)])
    coordinator.ship_transfer(tr.id, "shipper-1")

    with pytest.raises(InvalidStateError):
        coordinator.ship_transfer(tr.id, "shipper-1")

    assert coordinator.get_stock_level("SKU-1", "JHB").qty_on_hand == 4


def test_partial_receipts_credit_only_the_delta(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 10})
    tr = _create(coordinator, [("SKU-1", 10)])
    line_id = coordinator.ship_transfer(tr.id, "shipper-1").lines[0].id

    coordinator.record_receipt(tr.id, line_id, 4, "receiver-1")
    coordinator.record_receipt(tr.id, line_id, 4, "receiver-1")  # même cumul : no-op
    assert coordinator.get_stock_level("SKU-1", "CT").qty_on_hand == 4

    with pytest.raises(InvalidStateError):
        coordinator.complete_transfer(tr.id, "receiver-1")

    coordinator.record_receipt(tr.id, line_id, 10, "receiver-1")
    assert coordinator.get_stock_level("SKU-1", "CT").qty_on_hand == 10
    assert coordinator.complete_transfer(tr.id, "receiver-1").status == TransferStatus.received

    recv_mv = coordinator.list_movements(source_id=tr.id, source_type=MovementSource.transfer_receive)
    assert sorted(m.delta_quantity for m in recv_mv.items) == [4, 6]


def test_receipt_validation(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 10})
    tr = _create(coordinator, [("SKU-1", 5)])
    line_id = coordinator.ship_transfer(tr.id, "shipper-1").lines[0].id
    coordinator.record_receipt(tr.id, line_id, 3, "receiver-1")

    with pytest.raises(ValidationError):
        coordinator.record_receipt(tr.id, line_id, 6, "receiver-1")
    with pytest.raises(ValidationError):
        coordinator.record_receipt(tr.id, line_id, -1, "receiver-1")
    with pytest.raises(ValidationError):
        coordinator.record_receipt(tr.id, line_id, 2, "receiver-1")
    with pytest.raises(NotFoundError):
        coordinator.record_receipt(tr.id, line_id + 100, 1, "receiver-1")


def test_receipt_requires_in_transit(coordinator):
    tr = _create(coordinator, [("SKU-1", 1)])

    with pytest.raises(InvalidStateError):
        coordinator.record_receipt(tr.id, tr.lines[0].id, 1, "receiver-1")


def test_create_validation(coordinator):
    with pytest.raises(ValidationError):
        _create(coordinator, [("SKU-1", 1)], to_location="JHB")
    with pytest.raises(ValidationError):
        _create(coordinator, [])
    with pytest.raises(ValidationError):
        _create(coordinator, [("SKU-1", 0)])
    with pytest.raises(ValidationError):
        _create(coordinator, [("SKU-1", 1)], to_location="PE")


def test_cancel_pending_but_not_in_transit(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 5})
    pending = _create(coordinator, [("SKU-1", 1)])
    cancelled = coordinator.cancel_transfer(pending.id, "planner-1")
    assert cancelled.status == TransferStatus.cancelled
    assert cancelled.cancelled_by == "planner-1"

    moving = _create(coordinator, [("SKU-1", 2)])
    coordinator.ship_transfer(moving.id, "shipper-1")
    with pytest.raises(InvalidStateError):
        coordinator.cancel_transfer(moving.id, "planner-1")

    assert coordinator.get_stock_level("SKU-1", "JHB").qty_on_hand == 3


def test_notes_and_listing(coordinator):
    tr = _create(coordinator, [("SKU-1", 1)], order_id="SO-1001")
    _create(coordinator, [("SKU-2", 1)], from_location="CT", to_location="JHB")

    updated = coordinator.update_transfer_notes(tr.id, "dock 4", "planner-2")
    assert updated.notes == "dock 4"
    assert updated.notes_updated_by == "planner-2"
    assert updated.notes_updated_at is not None

    by_order = coordinator.list_transfers(order_id="SO-1001")
    assert by_order.total_items == 1
    assert by_order.items[0].line_count == 1

    pending = coordinator.list_transfers(status=TransferStatus.pending)
    assert pending.total_items == 2
