import pytest

from backend.app.db.models.core_types import AdjustmentReason, AdjustmentStatus, MovementSource
from backend.app.schemas.adjustment import AdjustmentCreate, AdjustmentLineCreate
from backend.services.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError


def _submit(coordinator, location, lines, reason=AdjustmentReason.damaged, by="clerk-1"):
    return coordinator.submit_adjustment(
        AdjustmentCreate(
            location=location,
            reason=reason,
            lines=[AdjustmentLineCreate(product_id=pid, adjusted_quantity=qty) for pid, qty in lines.items()],
        ),
        by,
    )


def test_approve_applies_difference_and_writes_one_movement(coordinator, stock_up):
    """
    GIVEN SKU-1 @ JHB on_hand = 10
    WHEN  un ajustement DAMAGED à 7 est soumis puis approuvé
    THEN  on_hand = 7 et un mouvement de -3 est journalisé
    """
    stock_up("JHB", {"SKU-1": 10})

    adj = _submit(coordinator, "JHB", {"SKU-1": 7})
    assert adj.status == AdjustmentStatus.pending
    assert adj.lines[0].current_quantity == 10
    assert adj.lines[0].difference == -3

    approved = coordinator.approve_adjustment(adj.id, "manager-1")
    assert approved.status == AdjustmentStatus.approved
    assert approved.decided_by == "manager-1"

    assert coordinator.get_stock_level("SKU-1", "JHB").qty_on_hand == 7

    movements = coordinator.list_movements(source_id=adj.id, source_type=MovementSource.adjustment)
    assert movements.total_items == 1
    assert movements.items[0].delta_quantity == -3
    assert movements.items[0].resulting_on_hand == 7


def test_submit_does_not_touch_ledger(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 10})

    _submit(coordinator, "JHB", {"SKU-1": 2})

    assert coordinator.get_stock_level("SKU-1", "JHB").qty_on_hand == 10


def test_numbers_follow_prefix_year_sequence(coordinator):
    adj = _submit(coordinator, "JHB", {"SKU-1": 1})
    prefix, year, seq = adj.adjustment_number.split("-")

    assert prefix == "ADJ"
    assert len(year) == 4
    assert seq == "00001"


@pytest.mark.parametrize(
    "lines, message",
    [
        ({}, "At least one adjustment line"),
        ({"SKU-1": -1}, "non-negative"),
        ({"NOPE": 3}, "Products not found"),
    ],
)
def test_submit_validation(coordinator, lines, message):
    with pytest.raises(ValidationError) as exc:
        _submit(coordinator, "JHB", lines)
    assert message in exc.value.message


def test_submit_rejects_unknown_location(coordinator):
    with pytest.raises(ValidationError):
        _submit(coordinator, "DBN", {"SKU-1": 1})


def test_submit_rejects_duplicate_products(coordinator):
    payload = AdjustmentCreate(
        location="JHB",
        reason=AdjustmentReason.found,
        lines=[
            AdjustmentLineCreate(product_id="SKU-1", adjusted_quantity=1),
            AdjustmentLineCreate(product_id="SKU-1", adjusted_quantity=2),
        ],
    )
    with pytest.raises(ValidationError):
        coordinator.submit_adjustment(payload, "clerk-1")


def test_second_decision_is_invalid_state(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 10})
    adj = _submit(coordinator, "JHB", {"SKU-1": 8})
    coordinator.approve_adjustment(adj.id, "manager-1")

    with pytest.raises(InvalidStateError):
        coordinator.approve_adjustment(adj.id, "manager-2")
    with pytest.raises(InvalidStateError):
        coordinator.reject_adjustment(adj.id, "manager-2", "too late")

    # appliqué une seule fois
    assert coordinator.get_stock_level("SKU-1", "JHB").qty_on_hand == 8


def test_reject_requires_reason_and_leaves_ledger(coordinator, stock_up):
    stock_up("CT", {"SKU-2": 5})
    adj = _submit(coordinator, "CT", {"SKU-2": 0}, reason=AdjustmentReason.lost)

    with pytest.raises(ValidationError):
        coordinator.reject_adjustment(adj.id, "manager-1", "   ")

    rejected = coordinator.reject_adjustment(adj.id, "manager-1", " recount first ")
    assert rejected.status == AdjustmentStatus.rejected
    assert rejected.rejection_reason == "recount first"
    assert coordinator.get_stock_level("SKU-2", "CT").qty_on_hand == 5


def test_submitter_cannot_approve_own_adjustment(coordinator):
    adj = _submit(coordinator, "JHB", {"SKU-1": 4}, by="clerk-1")

    with pytest.raises(ValidationError):
        coordinator.approve_adjustment(adj.id, "clerk-1")

    assert coordinator.get_adjustment(adj.id).status == AdjustmentStatus.pending


def test_stale_snapshot_conflicts_and_stays_pending(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 10})
    stale = _submit(coordinator, "JHB", {"SKU-1": 9})

    # le ledger bouge entre la soumission et l'approbation
    other = _submit(coordinator, "JHB", {"SKU-1": 6}, by="clerk-2")
    coordinator.approve_adjustment(other.id, "manager-1")

    with pytest.raises(ConflictError) as exc:
        coordinator.approve_adjustment(stale.id, "manager-1")
    assert exc.value.retryable is False

    # rollback complet : toujours PENDING, ledger inchangé
    assert coordinator.get_adjustment(stale.id).status == AdjustmentStatus.pending
    assert coordinator.get_stock_level("SKU-1", "JHB").qty_on_hand == 6


def test_zero_difference_line_writes_no_movement(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 3, "SKU-2": 4})
    adj = _submit(coordinator, "JHB", {"SKU-1": 3, "SKU-2": 1})

    coordinator.approve_adjustment(adj.id, "manager-1")

    movements = coordinator.list_movements(source_id=adj.id, source_type=MovementSource.adjustment)
    assert movements.total_items == 1
    assert movements.items[0].product_id == "SKU-2"


def test_cancel_pending_adjustment(coordinator):
    adj = _submit(coordinator, "JHB", {"SKU-1": 4})

    cancelled = coordinator.cancel_adjustment(adj.id, "clerk-1")
    assert cancelled.status == AdjustmentStatus.cancelled

    with pytest.raises(InvalidStateError):
        coordinator.approve_adjustment(adj.id, "manager-1")


def test_unknown_adjustment_not_found(coordinator):
    with pytest.raises(NotFoundError):
        coordinator.get_adjustment(999)


def test_list_adjustments_filters_by_status(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 10})
    pending = _submit(coordinator, "JHB", {"SKU-1": 9})

    page = coordinator.list_adjustments(status=AdjustmentStatus.pending)

    assert page.total_items == 1
    assert page.items[0].id == pending.id
    assert page.items[0].line_count == 1

    everything = coordinator.list_adjustments(location="JHB")
    assert everything.total_items == 2


def test_refresh_then_reapprove_against_new_ledger(coordinator, stock_up):
    """
    GIVEN un ajustement à 9 soumis sur on_hand = 10, puis le ledger passe à 6
    WHEN  l'approbation échoue, l'ajustement est rafraîchi puis ré-approuvé
    THEN  on_hand = 9 (la quantité cible) et l'écart appliqué est +3
    """
    stock_up("JHB", {"SKU-1": 10})
    stale = _submit(coordinator, "JHB", {"SKU-1": 9})
    other = _submit(coordinator, "JHB", {"SKU-1": 6}, by="clerk-2")
    coordinator.approve_adjustment(other.id, "manager-1")

    with pytest.raises(ConflictError):
        coordinator.approve_adjustment(stale.id, "manager-1")

    refreshed = coordinator.refresh_adjustment(stale.id, "clerk-1")
    assert refreshed.status == AdjustmentStatus.pending
    assert refreshed.refreshed_by == "clerk-1"
    assert refreshed.lines[0].current_quantity == 6
    assert refreshed.lines[0].adjusted_quantity == 9
    assert refreshed.lines[0].difference == 3
    assert refreshed.lines[0].snapshot_version > stale.lines[0].snapshot_version

    # aucune écriture au refresh
    assert coordinator.get_stock_level("SKU-1", "JHB").qty_on_hand == 6

    coordinator.approve_adjustment(stale.id, "manager-1")
    assert coordinator.get_stock_level("SKU-1", "JHB").qty_on_hand == 9

    movements = coordinator.list_movements(source_id=stale.id, source_type=MovementSource.adjustment)
    assert movements.total_items == 1
    assert movements.items[0].delta_quantity == 3


def test_refresh_only_while_pending(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 4})
    adj = _submit(coordinator, "JHB", {"SKU-1": 2})
    coordinator.approve_adjustment(adj.id, "manager-1")

    with pytest.raises(InvalidStateError):
        coordinator.refresh_adjustment(adj.id, "clerk-1")
