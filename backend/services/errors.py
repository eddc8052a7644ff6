"""
Exceptions métier du moteur de réconciliation.

Toutes héritent de ReconciliationError ; l'API les traduit en réponses JSON
(voir backend.app.main).
"""

from __future__ import annotations

from typing import Any


class ReconciliationError(Exception):
    code = "RECONCILIATION_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ReconciliationError):
    """Entrée invalide : faute de l'appelant, jamais rejouée."""

    code = "VALIDATION_ERROR"


class NotFoundError(ReconciliationError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            f"{entity} not found: {entity_id}",
            details={"entity": entity, "id": str(entity_id)},
        )


class InvalidStateError(ReconciliationError):
    """Opération illégale dans l'état courant du document."""

    code = "INVALID_STATE"

    def __init__(self, message: str, *, status: Any = None, details: dict[str, Any] | None = None):
        details = dict(details or {})
        if status is not None:
            details["status"] = getattr(status, "value", status)
        super().__init__(message, details)


class ConflictError(ReconciliationError):
    """
    Perte d'une compare-and-swap optimiste.

    retryable=False quand rejouer ne peut rien changer (ex: la ligne a bougé
    depuis le snapshot d'un ajustement : un humain doit re-décider).
    """

    code = "CONFLICT"

    def __init__(self, message: str, *, retryable: bool = True, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.retryable = retryable


class InsufficientStockError(ReconciliationError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, shortages: list[dict[str, Any]]):
        summary = ", ".join(
            f"{s['product_id']}@{s['location']} (on_hand={s['on_hand']}, requested={s['requested']})"
            for s in shortages
        )
        super().__init__(f"Insufficient stock: {summary}", {"shortages": shortages})
        self.shortages = shortages


class NegativeStockError(ReconciliationError):
    """Invariant on_hand >= 0 violé : la validation amont a laissé passer un cas."""

    code = "NEGATIVE_STOCK"

    def __init__(self, product_id: str, location: str, on_hand: int, delta: int):
        super().__init__(
            f"Cannot reduce on_hand below 0 for {product_id}@{location} "
            f"(current: {on_hand}, delta: {delta})",
            {"product_id": product_id, "location": location, "on_hand": on_hand, "delta": delta},
        )
