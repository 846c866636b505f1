"""Pay several validated requisitions in one all-or-nothing step.

Eligibility and fund coverage are computed for the whole batch before
anything is written. Then one ledger debit per currency is issued, followed
by the payment transition of every requisition (each with its own action
record). Any error leaves the caller's transaction to roll back.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import BatchIneligible, InsufficientFunds, PermissionDenied, ValidationError
from app.models.requisition import ActionKind, ModePaiement, Niveau, Requisition, Statut
from app.models.user import User
from app.services import fund_ledger, workflow


logger = logging.getLogger("workflow_api.batch_payment")

BATCH_PAY_ROLES = {"comptable", "admin"}


@dataclass
class BatchPaymentSummary:
    paid_count: int
    totals: dict[str, Decimal]
    requisitions: list[str] = field(default_factory=list)
    mouvements: list[int] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f"{self.paid_count} réquisition(s) payée(s)"

    def as_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "details": {
                "paid_count": self.paid_count,
                "totals": {devise: str(total) for devise, total in self.totals.items()},
                "requisitions": self.requisitions,
            },
        }


def _ineligibility(req: Requisition) -> str | None:
    if req.niveau != Niveau.PAIEMENT or req.statut != Statut.VALIDEE:
        return f"{req.numero}: statut {req.statut.value} au niveau {req.niveau.value}, paiement impossible"
    if req.montant <= 0:
        return f"{req.numero}: montant nul"
    return None


async def pay_batch(
    db: AsyncSession,
    requisition_ids: list[uuid.UUID],
    actor: User,
    mode_paiement: ModePaiement | str | None = None,
) -> BatchPaymentSummary:
    if actor.role not in BATCH_PAY_ROLES:
        raise PermissionDenied("Seul le comptable peut effectuer un paiement groupé")
    if not requisition_ids:
        raise ValidationError("Aucune réquisition sélectionnée")
    if len(set(requisition_ids)) != len(requisition_ids):
        raise ValidationError("La sélection contient des doublons")

    res = await db.execute(select(Requisition).where(Requisition.id.in_(requisition_ids)))
    found = {req.id: req for req in res.scalars().all()}

    reasons: dict[str, str] = {}
    for requisition_id in requisition_ids:
        req = found.get(requisition_id)
        if req is None:
            reasons[str(requisition_id)] = f"{requisition_id}: réquisition introuvable"
            continue
        reason = _ineligibility(req)
        if reason:
            reasons[str(requisition_id)] = reason
    if reasons:
        raise BatchIneligible(reasons)

    batch = [found[requisition_id] for requisition_id in requisition_ids]
    groups: dict[str, list[Requisition]] = {}
    for req in batch:
        groups.setdefault(req.devise, []).append(req)
    totals = {
        devise: sum((req.montant for req in reqs), Decimal("0")).quantize(fund_ledger.CENT)
        for devise, reqs in sorted(groups.items())
    }

    balances = await fund_ledger.lock_balances(db, totals.keys())
    shortfalls = {
        devise: {"disponible": balances[devise], "requis": total}
        for devise, total in totals.items()
        if balances[devise] < total
    }
    if shortfalls:
        logger.warning("Batch payment refused, shortfall in %s", ", ".join(sorted(shortfalls)))
        raise InsufficientFunds(shortfalls)

    summary = BatchPaymentSummary(paid_count=0, totals=totals)
    for devise, total in totals.items():
        numeros = ", ".join(req.numero for req in groups[devise])
        movement = await fund_ledger.debit(
            db,
            devise,
            total,
            f"Paiement groupé: {numeros}",
            user_id=actor.id,
        )
        summary.mouvements.append(movement.id)

    for req in batch:
        await workflow.submit_action(
            db,
            req.id,
            actor,
            ActionKind.PAY,
            "Paiement groupé",
            mode_paiement,
            settle=False,
        )
        summary.paid_count += 1
        summary.requisitions.append(req.numero)

    logger.info(
        "Batch payment by %s: %s requisition(s), %s",
        actor.id,
        summary.paid_count,
        ", ".join(f"{total} {devise}" for devise, total in totals.items()),
    )
    return summary
