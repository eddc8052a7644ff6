import threading

import pytest

from backend.app.db.models.core_types import AdjustmentReason, AdjustmentStatus, MovementSource, TransferStatus
from backend.app.schemas.adjustment import AdjustmentCreate, AdjustmentLineCreate
from backend.app.schemas.transfer import TransferCreate, TransferLineCreate
from backend.services import adjustments, idempotency
from backend.services.coordinator import ReconciliationCoordinator
from backend.services.errors import ConflictError, InvalidStateError, ValidationError


def _adjustment(location="JHB", product_id="SKU-1", qty=7):
    return AdjustmentCreate(
        location=location,
        reason=AdjustmentReason.damaged,
        lines=[AdjustmentLineCreate(product_id=product_id, adjusted_quantity=qty)],
    )


def test_idempotent_submit_returns_stored_result(coordinator):
    first = coordinator.submit_adjustment(_adjustment(), "clerk-1", idempotency_key="idem-1")
    again = coordinator.submit_adjustment(_adjustment(qty=99), "clerk-1", idempotency_key="idem-1")

    assert again.id == first.id
    assert again.lines[0].adjusted_quantity == 7
    assert coordinator.list_adjustments().total_items == 1


def test_idempotency_key_reused_for_other_operation(coordinator):
    coordinator.submit_adjustment(_adjustment(), "clerk-1", idempotency_key="idem-2")

    with pytest.raises(ValidationError):
        coordinator.create_transfer(
            TransferCreate(
                from_location="JHB",
                to_location="CT",
                lines=[TransferLineCreate(product_id="SKU-1", quantity=1)],
            ),
            "planner-1",
            idempotency_key="idem-2",
        )


def test_idempotent_ship_does_not_debit_twice(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 10})
    tr = coordinator.create_transfer(
        TransferCreate(
            from_location="JHB",
            to_location="CT",
            lines=[TransferLineCreate(product_id="SKU-1", quantity=4)],
        ),
        "planner-1",
    )

    coordinator.ship_transfer(tr.id, "shipper-1", idempotency_key="ship-1")
    replay = coordinator.ship_transfer(tr.id, "shipper-1", idempotency_key="ship-1")

    assert replay.id == tr.id
    assert coordinator.get_stock_level("SKU-1", "JHB").qty_on_hand == 6
    assert coordinator.list_movements(source_type=MovementSource.transfer_ship).total_items == 1


def test_failed_operation_does_not_consume_key(coordinator):
    with pytest.raises(ValidationError):
        coordinator.submit_adjustment(_adjustment(product_id="NOPE"), "clerk-1", idempotency_key="idem-3")

    adj = coordinator.submit_adjustment(_adjustment(), "clerk-1", idempotency_key="idem-3")
    assert adj.status == AdjustmentStatus.pending


def test_retryable_conflict_is_retried(coordinator, stock_up, monkeypatch):
    stock_up("JHB", {"SKU-1": 10})
    adj = coordinator.submit_adjustment(_adjustment(), "clerk-1")

    real_approve = adjustments.approve_adjustment
    calls = {"n": 0}

    def flaky_approve(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConflictError("simulated lost compare-and-swap")
        return real_approve(*args, **kwargs)

    monkeypatch.setattr(adjustments, "approve_adjustment", flaky_approve)

    approved = coordinator.approve_adjustment(adj.id, "manager-1")

    assert calls["n"] == 2
    assert approved.status == AdjustmentStatus.approved
    assert coordinator.get_stock_level("SKU-1", "JHB").qty_on_hand == 7


def test_retries_are_bounded(session_factory, settings, monkeypatch):
    sleeps = []
    coordinator = ReconciliationCoordinator(session_factory, settings, sleep=sleeps.append)
    adj = coordinator.submit_adjustment(_adjustment(), "clerk-1")
    calls = {"n": 0}

    def always_conflict(*args, **kwargs):
        calls["n"] += 1
        raise ConflictError("still racing")

    monkeypatch.setattr(adjustments, "approve_adjustment", always_conflict)

    with pytest.raises(ConflictError):
        coordinator.approve_adjustment(adj.id, "manager-1")

    assert calls["n"] == settings.conflict_retry_attempts
    assert len(sleeps) == settings.conflict_retry_attempts - 1


def test_non_retryable_conflict_is_not_retried(coordinator, monkeypatch):
    adj = coordinator.submit_adjustment(_adjustment(), "clerk-1")
    calls = {"n": 0}

    def stale(*args, **kwargs):
        calls["n"] += 1
        raise ConflictError("snapshot moved", retryable=False)

    monkeypatch.setattr(adjustments, "approve_adjustment", stale)

    with pytest.raises(ConflictError):
        coordinator.approve_adjustment(adj.id, "manager-1")
    assert calls["n"] == 1


def test_concurrent_approvals_apply_exactly_once(coordinator, stock_up):
    """
    Deux managers approuvent le même ajustement en parallèle :
    exactement un succès, l'autre reçoit InvalidStateError.
    """
    stock_up("JHB", {"SKU-1": 10})
    adj = coordinator.submit_adjustment(_adjustment(), "clerk-1")

    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def approve(approver):
        barrier.wait()
        try:
            coordinator.approve_adjustment(adj.id, approver)
            result = "ok"
        except InvalidStateError:
            result = "invalid_state"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=approve, args=(who,)) for who in ("manager-1", "manager-2")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(outcomes) == ["invalid_state", "ok"]
    assert coordinator.get_stock_level("SKU-1", "JHB").qty_on_hand == 7
    assert coordinator.list_movements(source_id=adj.id, source_type=MovementSource.adjustment).total_items == 1


def test_page_size_is_capped(coordinator, settings):
    page = coordinator.list_adjustments(page_size=10_000)
    assert page.page_size == settings.max_page_size

    with pytest.raises(ValidationError):
        coordinator.list_adjustments(page=0)


def _shipped_transfer(coordinator, stock_up, lines=(("SKU-2", 5),)):
    stock_up("JHB", {pid: 20 for pid, _ in lines})
    tr = coordinator.create_transfer(
        TransferCreate(
            from_location="JHB",
            to_location="CT",
            lines=[TransferLineCreate(product_id=pid, quantity=qty) for pid, qty in lines],
        ),
        "planner-1",
    )
    return coordinator.ship_transfer(tr.id, "shipper-1")


def test_idempotent_receipt_credits_once(coordinator, stock_up):
    tr = _shipped_transfer(coordinator, stock_up)
    line_id = tr.lines[0].id

    coordinator.record_receipt(tr.id, line_id, 3, "receiver-1", idempotency_key="rcv-1")
    replay = coordinator.record_receipt(tr.id, line_id, 5, "receiver-1", idempotency_key="rcv-1")

    # le rejeu renvoie l'état stocké, la seconde quantité n'est pas jouée
    assert replay.lines[0].received_quantity == 3
    assert coordinator.get_stock_level("SKU-2", "CT").qty_on_hand == 3
    assert coordinator.list_movements(source_type=MovementSource.transfer_receive).total_items == 1


def test_receipt_key_is_bound_to_its_line(coordinator, stock_up):
    tr = _shipped_transfer(coordinator, stock_up, lines=(("SKU-1", 2), ("SKU-2", 4)))
    first, second = tr.lines

    coordinator.record_receipt(tr.id, first.id, 2, "receiver-1", idempotency_key="rcv-2")

    with pytest.raises(ValidationError):
        coordinator.record_receipt(tr.id, second.id, 4, "receiver-1", idempotency_key="rcv-2")

    assert coordinator.get_stock_level("SKU-2", "CT").qty_on_hand == 0
    assert coordinator.get_transfer(tr.id).status == TransferStatus.in_transit


def test_concurrent_same_key_receipts_credit_once(coordinator, stock_up):
    """
    Deux réceptions parallèles avec la même Idempotency-Key :
    aucune erreur, la destination n'est créditée qu'une fois.
    """
    tr = _shipped_transfer(coordinator, stock_up)
    line_id = tr.lines[0].id

    barrier = threading.Barrier(2)
    errors = []
    lock = threading.Lock()

    def receive():
        barrier.wait()
        try:
            coordinator.record_receipt(tr.id, line_id, 5, "receiver-1", idempotency_key="rcv-3")
        except Exception as exc:
            with lock:
                errors.append(exc)

    threads = [threading.Thread(target=receive) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    assert coordinator.get_stock_level("SKU-2", "CT").qty_on_hand == 5
    assert coordinator.list_movements(source_type=MovementSource.transfer_receive).total_items == 1


def test_duplicate_key_insert_is_retried_as_conflict(coordinator, monkeypatch):
    """
    Un écrivain concurrent enregistre la même clé entre la recherche et
    l'insertion : l'IntegrityError devient un conflit rejouable et la
    tentative suivante rejoue le résultat stocké.
    """
    first = coordinator.submit_adjustment(_adjustment(), "clerk-1", idempotency_key="idem-race")

    real_find = idempotency.find_replay
    calls = {"n": 0}

    def late_lookup(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_find(*args, **kwargs)

    monkeypatch.setattr(idempotency, "find_replay", late_lookup)

    again = coordinator.submit_adjustment(_adjustment(qty=3), "clerk-1", idempotency_key="idem-race")

    assert calls["n"] == 2
    assert again.id == first.id
    assert again.lines[0].adjusted_quantity == 7
    assert coordinator.list_adjustments().total_items == 1


def test_duplicate_key_insert_exhausts_retries(session_factory, settings, monkeypatch):
    sleeps = []
    coordinator = ReconciliationCoordinator(session_factory, settings, sleep=sleeps.append)
    coordinator.submit_adjustment(_adjustment(), "clerk-1", idempotency_key="idem-stuck")

    monkeypatch.setattr(idempotency, "find_replay", lambda *args, **kwargs: None)

    with pytest.raises(ConflictError) as exc:
        coordinator.submit_adjustment(_adjustment(), "clerk-1", idempotency_key="idem-stuck")

    assert exc.value.retryable is True
    assert len(sleeps) == settings.conflict_retry_attempts - 1
    assert coordinator.list_adjustments().total_items == 1
