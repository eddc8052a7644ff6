"""
Reconciliation Coordinator.

Point d'entrée unique des workflows : une opération = une transaction
(lecture versionnée, validation, écriture, mouvement, commit ou rollback).

- ConflictError rejouable : nouvelle tentative dans une transaction neuve,
  nombre borné (conflict_retry_attempts) avec un petit back-off
- IntegrityError au flush/commit : traduite en ConflictError rejouable
- Idempotency-Key : une clé déjà jouée renvoie le résultat stocké sans
  ré-appliquer quoi que ce soit

Les résultats sont des schémas Pydantic construits DANS la transaction.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.config import Settings, get_settings
from backend.app.core.logging import get_logger
from backend.app.db.models.core_types import (
    AdjustmentReason,
    AdjustmentStatus,
    CycleCountStatus,
    MovementSource,
    TransferStatus,
)
from backend.app.db.models.models_v1 import CycleCountSession, StockLevel
from backend.app.schemas.adjustment import AdjustmentCreate, AdjustmentRead, AdjustmentSummary
from backend.app.schemas.common import Page
from backend.app.schemas.cycle_count import (
    CountEntry,
    CycleCountConversion,
    CycleCountCounterView,
    CycleCountCreate,
    CycleCountLineCounterView,
    CycleCountLineReviewView,
    CycleCountReviewView,
    CycleCountSummary,
)
from backend.app.schemas.location import LocationRead
from backend.app.schemas.movement import (
    LedgerDiscrepancyRead,
    LedgerVerification,
    OnHandReconstruction,
    StockMovementRead,
)
from backend.app.schemas.stock_level import InventorySummaryRead, ReorderSettingsUpdate, StockLevelRead
from backend.app.schemas.transfer import TransferCreate, TransferRead, TransferSummary
from backend.services import (
    adjustments,
    cycle_counts,
    idempotency,
    inventory,
    ledger,
    movements,
    registry,
    transfers,
)
from backend.services.errors import ConflictError, ValidationError

logger = get_logger(__name__)

R = TypeVar("R")


# ---------- Projections ----------
def _stock_read(sl: StockLevel) -> StockLevelRead:
    return StockLevelRead(
        product_id=sl.product_id,
        location=sl.location,
        qty_on_hand=sl.qty_on_hand,
        qty_reserved=sl.qty_reserved,
        available=sl.available,
        reorder_point=sl.reorder_point,
        reorder_quantity=sl.reorder_quantity,
        minimum_stock=sl.minimum_stock,
        maximum_stock=sl.maximum_stock,
        version=sl.version,
        stock_status=inventory.stock_status_of(sl),
        updated_at=sl.updated_at,
    )


def _counter_view(session: CycleCountSession) -> CycleCountCounterView:
    return CycleCountCounterView(
        id=session.id,
        session_number=session.session_number,
        location=session.location,
        status=session.status,
        notes=session.notes,
        line_count=len(session.lines),
        counted_line_count=sum(1 for ln in session.lines if ln.counted_quantity is not None),
        created_by=session.created_by,
        created_at=session.created_at,
        lines=[CycleCountLineCounterView.model_validate(ln) for ln in session.lines],
    )


def _review_view(session: CycleCountSession) -> CycleCountReviewView:
    return CycleCountReviewView(
        id=session.id,
        session_number=session.session_number,
        location=session.location,
        status=session.status,
        notes=session.notes,
        adjustment_id=session.adjustment_id,
        adjustment_number=session.adjustment_number,
        created_by=session.created_by,
        created_at=session.created_at,
        completed_by=session.completed_by,
        completed_at=session.completed_at,
        lines=[CycleCountLineReviewView.model_validate(ln) for ln in session.lines],
        lines_with_variance=sum(1 for ln in session.lines if ln.variance),
        net_variance=sum(ln.variance or 0 for ln in session.lines),
    )


class ReconciliationCoordinator:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._sleep = sleep

    # ---------- Transactions ----------
    def _read(self, fn: Callable[[Session], R]) -> R:
        db = self.session_factory()
        try:
            with db.begin():
                return fn(db)
        finally:
            db.close()

    def _run(
        self,
        operation: str,
        fn: Callable[[Session], R],
        *,
        idempotency_key: str | None = None,
        replay: Callable[[Session, int], R] | None = None,
    ) -> R:
        key = idempotency.normalize_key(idempotency_key)
        attempts = self.settings.conflict_retry_attempts

        for attempt in range(1, attempts + 1):
            db = self.session_factory()
            try:
                with db.begin():
                    if key is not None:
                        resource_id = idempotency.find_replay(db, key, operation)
                        if resource_id is not None:
                            logger.info("idempotent_replay", operation=operation, resource_id=resource_id)
                            return replay(db, resource_id)

                    result = fn(db)
                    if key is not None:
                        idempotency.remember(db, key, operation, result.id)
                    db.flush()
                return result
            except IntegrityError as exc:
                conflict = ConflictError(
                    f"Concurrent write detected during {operation}",
                    details={"operation": operation},
                )
                conflict.__cause__ = exc
            except ConflictError as exc:
                if not exc.retryable:
                    raise
                conflict = exc
            finally:
                db.close()

            if attempt == attempts:
                logger.warning("conflict_retries_exhausted", operation=operation, attempts=attempts)
                raise conflict

            logger.warning(
                "conflict_retry",
                operation=operation,
                attempt=attempt,
                max_attempts=attempts,
                reason=conflict.message,
            )
            self._sleep(self.settings.conflict_retry_backoff_seconds * attempt)

        raise AssertionError("unreachable")

    def _page_size(self, page_size: int | None) -> int:
        if page_size is None:
            return self.settings.default_page_size
        if page_size < 1:
            raise ValidationError("page_size must be at least 1")
        return min(page_size, self.settings.max_page_size)

    @staticmethod
    def _page(page: int) -> int:
        if page < 1:
            raise ValidationError("page must be at least 1")
        return page

    # ---------- Référentiels ----------
    def list_locations(self) -> list[LocationRead]:
        return self._read(lambda db: [LocationRead.model_validate(loc) for loc in registry.list_locations(db)])

    # ---------- Adjustments ----------
    def submit_adjustment(
        self,
        payload: AdjustmentCreate,
        submitted_by: str,
        *,
        idempotency_key: str | None = None,
    ) -> AdjustmentRead:
        def op(db: Session) -> AdjustmentRead:
            adj = adjustments.submit_adjustment(
                db,
                location=payload.location,
                reason=payload.reason,
                lines=payload.lines,
                submitted_by=submitted_by,
                notes=payload.notes,
            )
            return AdjustmentRead.model_validate(adj)

        return self._run(
            "adjustment.submit",
            op,
            idempotency_key=idempotency_key,
            replay=lambda db, rid: AdjustmentRead.model_validate(adjustments.get_adjustment(db, rid)),
        )

    def approve_adjustment(self, adjustment_id: int, approver_id: str) -> AdjustmentRead:
        return self._run(
            "adjustment.approve",
            lambda db: AdjustmentRead.model_validate(
                adjustments.approve_adjustment(
                    db,
                    adjustment_id,
                    approver_id,
                    require_distinct_approver=self.settings.require_distinct_approver,
                )
            ),
        )

    def refresh_adjustment(self, adjustment_id: int, actor_id: str) -> AdjustmentRead:
        return self._run(
            "adjustment.refresh",
            lambda db: AdjustmentRead.model_validate(adjustments.refresh_adjustment(db, adjustment_id, actor_id)),
        )

    def reject_adjustment(self, adjustment_id: int, approver_id: str, reason: str) -> AdjustmentRead:
        return self._run(
            "adjustment.reject",
            lambda db: AdjustmentRead.model_validate(
                adjustments.reject_adjustment(db, adjustment_id, approver_id, reason)
            ),
        )

    def cancel_adjustment(self, adjustment_id: int, actor_id: str) -> AdjustmentRead:
        return self._run(
            "adjustment.cancel",
            lambda db: AdjustmentRead.model_validate(adjustments.cancel_adjustment(db, adjustment_id, actor_id)),
        )

    def get_adjustment(self, adjustment_id: int) -> AdjustmentRead:
        return self._read(lambda db: AdjustmentRead.model_validate(adjustments.get_adjustment(db, adjustment_id)))

    def list_adjustments(
        self,
        *,
        location: str | None = None,
        status: AdjustmentStatus | None = None,
        reason: AdjustmentReason | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> Page[AdjustmentSummary]:
        page = self._page(page)
        size = self._page_size(page_size)

        def op(db: Session) -> Page[AdjustmentSummary]:
            rows, total = adjustments.list_adjustments(
                db,
                location=location,
                status=status,
                reason=reason,
                start=start,
                end=end,
                page=page,
                page_size=size,
            )
            items = [
                AdjustmentSummary(
                    id=adj.id,
                    adjustment_number=adj.adjustment_number,
                    location=adj.location,
                    reason=adj.reason,
                    status=adj.status,
                    line_count=line_count,
                    created_by=adj.created_by,
                    created_at=adj.created_at,
                    decided_at=adj.decided_at,
                )
                for adj, line_count in rows
            ]
            return Page[AdjustmentSummary].build(items, page=page, page_size=size, total=total)

        return self._read(op)

    # ---------- Cycle counts ----------
    def create_cycle_count(
        self,
        payload: CycleCountCreate,
        created_by: str,
        *,
        idempotency_key: str | None = None,
    ) -> CycleCountCounterView:
        return self._run(
            "cycle_count.create",
            lambda db: _counter_view(
                cycle_counts.create_session(
                    db,
                    location=payload.location,
                    product_ids=payload.product_ids,
                    created_by=created_by,
                    notes=payload.notes,
                )
            ),
            idempotency_key=idempotency_key,
            replay=lambda db, rid: _counter_view(cycle_counts.get_session(db, rid)),
        )

    def record_count(self, session_id: int, entry: CountEntry, counted_by: str) -> CycleCountCounterView:
        def op(db: Session) -> CycleCountCounterView:
            cycle_counts.record_count(
                db,
                session_id,
                entry.product_id,
                entry.counted_quantity,
                counted_by,
                entry.notes,
            )
            return _counter_view(cycle_counts.get_session(db, session_id))

        return self._run("cycle_count.record", op)

    def complete_cycle_count(self, session_id: int, actor_id: str) -> CycleCountReviewView:
        return self._run(
            "cycle_count.complete",
            lambda db: _review_view(cycle_counts.complete_session(db, session_id, actor_id)),
        )

    def convert_cycle_count(self, session_id: int, actor_id: str) -> CycleCountConversion:
        def op(db: Session) -> CycleCountConversion:
            session, adj = cycle_counts.convert_to_adjustment(db, session_id, actor_id)
            return CycleCountConversion(
                session_id=session.id,
                adjustment_id=adj.id if adj else None,
                adjustment_number=adj.adjustment_number if adj else None,
                lines_adjusted=len(adj.lines) if adj else 0,
            )

        return self._run("cycle_count.convert", op)

    def cancel_cycle_count(self, session_id: int, actor_id: str) -> CycleCountCounterView:
        return self._run(
            "cycle_count.cancel",
            lambda db: _counter_view(cycle_counts.cancel_session(db, session_id, actor_id)),
        )

    def get_cycle_count(self, session_id: int) -> CycleCountCounterView:
        return self._read(lambda db: _counter_view(cycle_counts.get_session(db, session_id)))

    def review_cycle_count(self, session_id: int) -> CycleCountReviewView:
        return self._read(lambda db: _review_view(cycle_counts.get_session_for_review(db, session_id)))

    def list_cycle_counts(
        self,
        *,
        location: str | None = None,
        status: CycleCountStatus | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> Page[CycleCountSummary]:
        page = self._page(page)
        size = self._page_size(page_size)

        def op(db: Session) -> Page[CycleCountSummary]:
            rows, total = cycle_counts.list_sessions(
                db, location=location, status=status, page=page, page_size=size
            )
            items = [
                CycleCountSummary(
                    id=s.id,
                    session_number=s.session_number,
                    location=s.location,
                    status=s.status,
                    line_count=line_count,
                    counted_line_count=counted,
                    adjustment_number=s.adjustment_number,
                    created_by=s.created_by,
                    created_at=s.created_at,
                    completed_at=s.completed_at,
                )
                for s, line_count, counted in rows
            ]
            return Page[CycleCountSummary].build(items, page=page, page_size=size, total=total)

        return self._read(op)

    # ---------- Transfers ----------
    def create_transfer(
        self,
        payload: TransferCreate,
        created_by: str,
        *,
        idempotency_key: str | None = None,
    ) -> TransferRead:
        return self._run(
            "transfer.create",
            lambda db: TransferRead.model_validate(
                transfers.create_transfer(
                    db,
                    from_location=payload.from_location,
                    to_location=payload.to_location,
                    lines=payload.lines,
                    created_by=created_by,
                    notes=payload.notes,
                    order_id=payload.order_id,
                )
            ),
            idempotency_key=idempotency_key,
            replay=self._transfer_replay,
        )

    def ship_transfer(
        self,
        transfer_id: int,
        shipper_id: str,
        *,
        idempotency_key: str | None = None,
    ) -> TransferRead:
        # la clé est liée au transfert visé : réutilisée ailleurs, elle est refusée
        return self._run(
            f"transfer.ship:{transfer_id}",
            lambda db: TransferRead.model_validate(transfers.ship_transfer(db, transfer_id, shipper_id)),
            idempotency_key=idempotency_key,
            replay=self._transfer_replay,
        )

    def record_receipt(
        self,
        transfer_id: int,
        line_id: int,
        received_quantity: int,
        receiver_id: str,
        *,
        idempotency_key: str | None = None,
    ) -> TransferRead:
        return self._run(
            f"transfer.receipt:{transfer_id}:{line_id}",
            lambda db: TransferRead.model_validate(
                transfers.record_receipt(db, transfer_id, line_id, received_quantity, receiver_id)
            ),
            idempotency_key=idempotency_key,
            replay=self._transfer_replay,
        )

    def complete_transfer(self, transfer_id: int, receiver_id: str) -> TransferRead:
        return self._run(
            "transfer.complete",
            lambda db: TransferRead.model_validate(transfers.complete_transfer(db, transfer_id, receiver_id)),
        )

    def cancel_transfer(self, transfer_id: int, actor_id: str) -> TransferRead:
        return self._run(
            "transfer.cancel",
            lambda db: TransferRead.model_validate(transfers.cancel_transfer(db, transfer_id, actor_id)),
        )

    def update_transfer_notes(self, transfer_id: int, notes: str, actor_id: str) -> TransferRead:
        return self._run(
            "transfer.notes",
            lambda db: TransferRead.model_validate(transfers.update_notes(db, transfer_id, notes, actor_id)),
        )

    def get_transfer(self, transfer_id: int) -> TransferRead:
        return self._read(lambda db: TransferRead.model_validate(transfers.get_transfer(db, transfer_id)))

    def list_transfers(
        self,
        *,
        status: TransferStatus | None = None,
        order_id: str | None = None,
        location: str | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> Page[TransferSummary]:
        page = self._page(page)
        size = self._page_size(page_size)

        def op(db: Session) -> Page[TransferSummary]:
            rows, total = transfers.list_transfers(
                db, status=status, order_id=order_id, location=location, page=page, page_size=size
            )
            items = [
                TransferSummary(
                    id=tr.id,
                    transfer_number=tr.transfer_number,
                    from_location=tr.from_location,
                    to_location=tr.to_location,
                    status=tr.status,
                    order_id=tr.order_id,
                    line_count=line_count,
                    created_at=tr.created_at,
                    shipped_at=tr.shipped_at,
                    received_at=tr.received_at,
                )
                for tr, line_count in rows
            ]
            return Page[TransferSummary].build(items, page=page, page_size=size, total=total)

        return self._read(op)

    @staticmethod
    def _transfer_replay(db: Session, transfer_id: int) -> TransferRead:
        return TransferRead.model_validate(transfers.get_transfer(db, transfer_id))

    # ---------- Stock ----------
    def list_stock_levels(
        self,
        *,
        location: str | None = None,
        product_id: str | None = None,
        low_stock_only: bool = False,
        page: int = 1,
        page_size: int | None = None,
    ) -> Page[StockLevelRead]:
        page = self._page(page)
        size = self._page_size(page_size)

        def op(db: Session) -> Page[StockLevelRead]:
            rows, total = inventory.list_stock_levels(
                db,
                location=location,
                product_id=product_id,
                low_stock_only=low_stock_only,
                page=page,
                page_size=size,
            )
            return Page[StockLevelRead].build(
                [_stock_read(sl) for sl in rows], page=page, page_size=size, total=total
            )

        return self._read(op)

    def get_stock_level(self, product_id: str, location: str) -> StockLevelRead:
        """Une paire jamais mouvementée se lit comme on_hand=0, version=0."""

        def op(db: Session) -> StockLevelRead:
            registry.require_location(db, location)
            registry.require_products(db, [product_id])
            sl = ledger.get_level(db, product_id, location)
            if sl is None:
                sl = StockLevel(product_id=product_id, location=location, qty_on_hand=0, qty_reserved=0, version=0)
            return _stock_read(sl)

        return self._read(op)

    def update_reorder_settings(
        self,
        product_id: str,
        location: str,
        payload: ReorderSettingsUpdate,
    ) -> StockLevelRead:
        return self._run(
            "stock.reorder_settings",
            lambda db: _stock_read(
                inventory.update_reorder_settings(
                    db,
                    product_id=product_id,
                    location=location,
                    settings=payload.model_dump(exclude_unset=True),
                )
            ),
        )

    def inventory_summary(self) -> InventorySummaryRead:
        return self._read(lambda db: InventorySummaryRead.model_validate(inventory.get_inventory_summary(db)))

    # ---------- Mouvements ----------
    def list_movements(
        self,
        *,
        product_id: str | None = None,
        location: str | None = None,
        source_type: MovementSource | None = None,
        source_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> Page[StockMovementRead]:
        page = self._page(page)
        size = self._page_size(page_size)

        def op(db: Session) -> Page[StockMovementRead]:
            rows, total = movements.list_movements(
                db,
                product_id=product_id,
                location=location,
                source_type=source_type,
                source_id=source_id,
                start=start,
                end=end,
                page=page,
                page_size=size,
            )
            return Page[StockMovementRead].build(
                [StockMovementRead.model_validate(mv) for mv in rows], page=page, page_size=size, total=total
            )

        return self._read(op)

    def reconstruct_on_hand(
        self,
        product_id: str,
        location: str,
        as_of: datetime | None = None,
    ) -> OnHandReconstruction:
        def op(db: Session) -> OnHandReconstruction:
            total, count = movements.reconstruct_on_hand(db, product_id, location, as_of)
            current = ledger.read_versioned(db, product_id, location)
            return OnHandReconstruction(
                product_id=product_id,
                location=location,
                as_of=as_of,
                movement_count=count,
                reconstructed_on_hand=total,
                ledger_on_hand=current.qty_on_hand if as_of is None else None,
            )

        return self._read(op)

    def verify_ledger(self, location: str | None = None) -> LedgerVerification:
        def op(db: Session) -> LedgerVerification:
            checked, discrepancies = movements.verify_ledger(db, location)
            if discrepancies:
                logger.warning("ledger_discrepancies_found", count=len(discrepancies), location=location)
            return LedgerVerification(
                rows_checked=checked,
                consistent=not discrepancies,
                discrepancies=[LedgerDiscrepancyRead.model_validate(d) for d in discrepancies],
            )

        return self._read(op)
