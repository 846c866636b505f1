"""Domain errors raised by the workflow, ledger, budget and batch services.

Every error carries a machine-readable ``code`` and the HTTP status it maps to
at the API boundary, plus a list of human-readable ``details`` and an optional
structured ``data`` payload (shortfalls, budget figures, per-id reasons).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class WorkflowError(Exception):
    code: str = "workflow_error"
    status_code: int = 400

    def __init__(
        self,
        message: str,
        *,
        details: list[str] | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []
        self.data = data or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "data": self.data,
        }


class PermissionDenied(WorkflowError):
    code = "permission_denied"
    status_code = 403


class InvalidTransition(WorkflowError):
    code = "invalid_transition"
    status_code = 409


class ValidationError(WorkflowError):
    code = "validation_error"
    status_code = 400


class BudgetExceeded(WorkflowError):
    code = "budget_exceeded"
    status_code = 422


class InsufficientFunds(WorkflowError):
    code = "insufficient_funds"
    status_code = 409

    def __init__(self, shortfalls: dict[str, dict[str, Decimal]]) -> None:
        details = [
            f"Fonds {devise} insuffisants: disponible {values['disponible']}, requis {values['requis']}"
            for devise, values in sorted(shortfalls.items())
        ]
        super().__init__(
            "Fonds insuffisants",
            details=details,
            data={
                devise: {key: str(value) for key, value in values.items()}
                for devise, values in shortfalls.items()
            },
        )
        self.shortfalls = shortfalls


class BatchIneligible(WorkflowError):
    code = "batch_ineligible"
    status_code = 400

    def __init__(self, reasons: dict[str, str]) -> None:
        super().__init__(
            "Aucun paiement effectué",
            details=[reasons[key] for key in reasons],
            data={"reasons": reasons},
        )
        self.reasons = reasons


class RequisitionNotFound(WorkflowError):
    code = "not_found"
    status_code = 404

    def __init__(self, requisition_id: Any) -> None:
        super().__init__(f"Réquisition {requisition_id} introuvable")
        self.requisition_id = requisition_id


class BordereauNotFound(WorkflowError):
    code = "not_found"
    status_code = 404

    def __init__(self, bordereau_id: Any) -> None:
        super().__init__(f"Bordereau {bordereau_id} introuvable")
        self.bordereau_id = bordereau_id
