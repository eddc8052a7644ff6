import pytest

from backend.app.db.models.core_types import StockStatus
from backend.app.schemas.stock_level import ReorderSettingsUpdate
from backend.services.errors import ValidationError
from backend.services.inventory import compute_stock_status


@pytest.mark.parametrize(
    "on_hand, reserved, reorder_point, maximum_stock, expected",
    [
        (0, 0, None, None, StockStatus.out_of_stock),
        (5, 5, None, None, StockStatus.out_of_stock),
        (50, 0, 10, 40, StockStatus.overstock),
        (8, 0, 10, None, StockStatus.low_stock),
        (11, 0, 10, None, StockStatus.in_stock),
        (3, 0, None, None, StockStatus.in_stock),
    ],
)
def test_compute_stock_status(on_hand, reserved, reorder_point, maximum_stock, expected):
    assert (
        compute_stock_status(
            on_hand=on_hand,
            reserved=reserved,
            reorder_point=reorder_point,
            maximum_stock=maximum_stock,
        )
        == expected
    )


def test_unmoved_pair_reads_as_zero(coordinator):
    level = coordinator.get_stock_level("SKU-3", "CT")

    assert level.qty_on_hand == 0
    assert level.version == 0
    assert level.stock_status == StockStatus.out_of_stock


def test_get_stock_level_validates_identifiers(coordinator):
    with pytest.raises(ValidationError):
        coordinator.get_stock_level("SKU-1", "NOWHERE")


def test_reorder_settings_are_partial_and_leave_version(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 8})

    updated = coordinator.update_reorder_settings(
        "SKU-1", "JHB", ReorderSettingsUpdate(reorder_point=10, reorder_quantity=20)
    )
    assert updated.reorder_point == 10
    assert updated.stock_status == StockStatus.low_stock
    assert updated.version == 1

    again = coordinator.update_reorder_settings("SKU-1", "JHB", ReorderSettingsUpdate(maximum_stock=100))
    assert again.reorder_point == 10
    assert again.maximum_stock == 100
    assert again.qty_on_hand == 8


def test_reorder_settings_on_new_pair_do_not_break_snapshots(coordinator):
    from backend.app.db.models.core_types import AdjustmentReason
    from backend.app.schemas.adjustment import AdjustmentCreate, AdjustmentLineCreate

    adj = coordinator.submit_adjustment(
        AdjustmentCreate(
            location="CT",
            reason=AdjustmentReason.found,
            lines=[AdjustmentLineCreate(product_id="SKU-3", adjusted_quantity=2)],
        ),
        "clerk-1",
    )
    # la ligne créée par les seuils a la version d'une ligne absente
    coordinator.update_reorder_settings("SKU-3", "CT", ReorderSettingsUpdate(reorder_point=1))

    coordinator.approve_adjustment(adj.id, "manager-1")
    assert coordinator.get_stock_level("SKU-3", "CT").qty_on_hand == 2


def test_reorder_settings_validation(coordinator):
    with pytest.raises(ValidationError):
        coordinator.update_reorder_settings("SKU-1", "JHB", ReorderSettingsUpdate(reorder_point=-1))
    with pytest.raises(ValidationError):
        coordinator.update_reorder_settings(
            "SKU-1", "JHB", ReorderSettingsUpdate(minimum_stock=10, maximum_stock=5)
        )


def test_low_stock_filter_and_summary(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 2, "SKU-2": 50})
    coordinator.update_reorder_settings("SKU-1", "JHB", ReorderSettingsUpdate(reorder_point=5))
    coordinator.update_reorder_settings("SKU-2", "JHB", ReorderSettingsUpdate(reorder_point=5))

    low = coordinator.list_stock_levels(low_stock_only=True)
    assert [sl.product_id for sl in low.items] == ["SKU-1"]
    assert low.total_items == 1

    summary = coordinator.inventory_summary()
    assert summary.total_products == 2
    assert summary.below_reorder_point == 1
    assert summary.pending_adjustments == 0
    assert summary.movements_today == 2


def test_reconstruct_and_verify_after_workflows(coordinator, stock_up):
    stock_up("JHB", {"SKU-1": 10})

    rebuilt = coordinator.reconstruct_on_hand("SKU-1", "JHB")
    assert rebuilt.reconstructed_on_hand == 10
    assert rebuilt.ledger_on_hand == 10
    assert rebuilt.movement_count == 1

    report = coordinator.verify_ledger()
    assert report.consistent is True
    assert report.rows_checked == 1
