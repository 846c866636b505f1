"""Per-currency cash balances and their append-only movement log.

Every balance change goes through :func:`credit` or :func:`debit`, which
update the ``fonds`` row and insert the matching ``mouvements_fonds`` row in
the caller's transaction. Neither function commits.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import InsufficientFunds, ValidationError
from app.models.fonds import Fonds, MouvementFonds


logger = logging.getLogger("workflow_api.ledger")

CENT = Decimal("0.01")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value or 0))
    except InvalidOperation:
        raise ValidationError(f"Montant invalide: {value!r}")


def normalize_devise(devise: str) -> str:
    code = (devise or "").strip().upper()
    if code not in settings.currencies:
        raise ValidationError(f"Devise non supportée: {devise}")
    return code


def positive_amount(montant: Any) -> Decimal:
    amount = to_decimal(montant).quantize(CENT)
    if amount <= 0:
        raise ValidationError("Le montant doit être supérieur à 0")
    return amount


async def _fund(db: AsyncSession, devise: str) -> Fonds:
    res = await db.execute(
        select(Fonds).where(Fonds.devise == devise).execution_options(populate_existing=True)
    )
    fund = res.scalar_one_or_none()
    if fund is None:
        raise ValidationError(f"Aucun fonds initialisé pour la devise {devise}")
    return fund


async def get_balance(db: AsyncSession, devise: str) -> Decimal:
    devise = normalize_devise(devise)
    res = await db.execute(select(Fonds.montant_disponible).where(Fonds.devise == devise))
    balance = res.scalar_one_or_none()
    if balance is None:
        raise ValidationError(f"Aucun fonds initialisé pour la devise {devise}")
    return to_decimal(balance)


async def list_funds(db: AsyncSession) -> list[Fonds]:
    res = await db.execute(
        select(Fonds).order_by(Fonds.devise).execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def list_movements(
    db: AsyncSession,
    devise: str | None = None,
    limit: int = 100,
) -> list[MouvementFonds]:
    stmt = select(MouvementFonds)
    if devise:
        stmt = stmt.where(MouvementFonds.devise == normalize_devise(devise))
    stmt = stmt.order_by(MouvementFonds.created_at.desc(), MouvementFonds.id.desc()).limit(limit)
    res = await db.execute(stmt)
    return list(res.scalars().all())


async def seed_funds(db: AsyncSession, devises: Iterable[str] | None = None) -> list[Fonds]:
    """Create the missing zero-balance fund rows. Existing rows are left alone."""
    wanted = [normalize_devise(d) for d in (devises or settings.currencies)]
    res = await db.execute(select(Fonds.devise).where(Fonds.devise.in_(wanted)))
    existing = set(res.scalars().all())
    created: list[Fonds] = []
    for devise in wanted:
        if devise in existing:
            continue
        fund = Fonds(devise=devise, montant_disponible=Decimal("0"), version=1, updated_at=_utcnow())
        db.add(fund)
        created.append(fund)
    if created:
        await db.flush()
        logger.info("Seeded funds: %s", ", ".join(f.devise for f in created))
    return created


async def credit(
    db: AsyncSession,
    devise: str,
    montant: Any,
    description: str | None = None,
    *,
    user_id: uuid.UUID | None = None,
) -> Fonds:
    devise = normalize_devise(devise)
    amount = positive_amount(montant)

    res = await db.execute(
        update(Fonds)
        .where(Fonds.devise == devise)
        .values(
            montant_disponible=Fonds.montant_disponible + amount,
            version=Fonds.version + 1,
            updated_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise ValidationError(f"Aucun fonds initialisé pour la devise {devise}")

    fund = await _fund(db, devise)
    db.add(
        MouvementFonds(
            type_mouvement="entree",
            montant=amount,
            devise=devise,
            description=description or "Ravitaillement",
            solde_apres=fund.montant_disponible,
            created_by=user_id,
            created_at=_utcnow(),
        )
    )
    await db.flush()
    logger.info("Credit %s %s, new balance %s", amount, devise, fund.montant_disponible)
    return fund


async def debit(
    db: AsyncSession,
    devise: str,
    montant: Any,
    description: str | None = None,
    *,
    requisition_id: uuid.UUID | None = None,
    user_id: uuid.UUID | None = None,
) -> MouvementFonds:
    """Withdraw ``montant`` from the fund, or raise ``InsufficientFunds``.

    The balance check and the decrement are one conditional UPDATE, so two
    concurrent debits cannot both pass against the same balance. On failure
    nothing has been written.
    """
    devise = normalize_devise(devise)
    amount = positive_amount(montant)

    res = await db.execute(
        update(Fonds)
        .where(Fonds.devise == devise, Fonds.montant_disponible >= amount)
        .values(
            montant_disponible=Fonds.montant_disponible - amount,
            version=Fonds.version + 1,
            updated_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        available = await get_balance(db, devise)
        logger.warning("Debit refused: %s %s requested, %s available", amount, devise, available)
        raise InsufficientFunds({devise: {"disponible": available, "requis": amount}})

    fund = await _fund(db, devise)
    movement = MouvementFonds(
        type_mouvement="sortie",
        montant=amount,
        devise=devise,
        description=description,
        solde_apres=fund.montant_disponible,
        requisition_id=requisition_id,
        created_by=user_id,
        created_at=_utcnow(),
    )
    db.add(movement)
    await db.flush()
    logger.info("Debit %s %s, new balance %s", amount, devise, fund.montant_disponible)
    return movement


async def lock_balances(db: AsyncSession, devises: Iterable[str]) -> dict[str, Decimal]:
    """Lock the given fund rows in currency order and return their balances."""
    wanted = sorted({normalize_devise(d) for d in devises})
    res = await db.execute(
        select(Fonds.devise, Fonds.montant_disponible)
        .where(Fonds.devise.in_(wanted))
        .order_by(Fonds.devise)
        .with_for_update()
    )
    balances = {devise: to_decimal(balance) for devise, balance in res.all()}
    for devise in wanted:
        balances.setdefault(devise, Decimal("0"))
    return balances


async def ledger_discrepancies(db: AsyncSession) -> list[dict[str, Any]]:
    """Currencies whose balance differs from the signed sum of their movements."""
    signed = case(
        (MouvementFonds.type_mouvement == "entree", MouvementFonds.montant),
        else_=-MouvementFonds.montant,
    )
    res = await db.execute(
        select(MouvementFonds.devise, func.coalesce(func.sum(signed), 0)).group_by(MouvementFonds.devise)
    )
    totals = {devise: to_decimal(total).quantize(CENT) for devise, total in res.all()}

    out: list[dict[str, Any]] = []
    for fund in await list_funds(db):
        balance = to_decimal(fund.montant_disponible).quantize(CENT)
        expected = totals.get(fund.devise, Decimal("0.00"))
        if balance != expected:
            out.append(
                {
                    "devise": fund.devise,
                    "montant_disponible": balance,
                    "somme_mouvements": expected,
                    "ecart": balance - expected,
                }
            )
    return out
