"""Monthly budget envelopes per spend category.

``check`` is a read-only query: the workflow consults it at the analyst stage
and decides itself whether a failure is a warning or a hard stop. Consumption
is recorded separately, once, when the general manager validates.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from io import BytesIO
from typing import Any

from openpyxl import load_workbook
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import BudgetExceeded, ValidationError
from app.models.budget import Budget
from app.models.requisition import Requisition
from app.services.fund_ledger import CENT, to_decimal


logger = logging.getLogger("workflow_api.budgets")

REASON_NOT_FOUND = "category not found"
REASON_EXCEEDED = "budget exceeded"

HEADER_SCAN_ROWS = 20
_DESCRIPTION_HEADERS = {"description", "libellé", "libelle", "item", "nom", "designation", "rubrique"}
_AMOUNT_HEADERS = {"montant", "budget", "prevu", "prévu", "prix", "cout", "coût", "valeur"}
_CLASSIFICATION_HEADERS = {"classification", "categorie", "catégorie", "type", "classe"}
_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class BudgetCheckResult:
    rubrique: str
    mois: str
    allowed: bool
    requested: Decimal
    reason: str | None = None
    details: dict[str, Decimal] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"allowed": self.allowed}
        if self.reason:
            out["reason"] = self.reason
        if self.details:
            out["details"] = {k: str(v) for k, v in self.details.items()}
        return out


def check_month(mois: str) -> str:
    if not mois or not _MONTH_RE.match(mois):
        raise ValidationError(f"Mois invalide (attendu YYYY-MM): {mois}")
    return mois


def month_of(value: datetime) -> str:
    return value.strftime("%Y-%m")


def normalize_amount(montant: Any, devise: str | None) -> Decimal:
    """Convert ``montant`` to the reference currency."""
    amount = to_decimal(montant)
    code = (devise or settings.reference_currency).strip().upper()
    if code == settings.reference_currency:
        return amount.quantize(CENT)
    rate = settings.exchange_rates.get(code)
    if not rate:
        raise ValidationError(f"Aucun taux de change configuré pour {code}")
    return (amount / Decimal(rate)).quantize(CENT)


async def _envelope(db: AsyncSession, rubrique: str, mois: str) -> Budget | None:
    res = await db.execute(
        select(Budget)
        .where(Budget.rubrique == rubrique, Budget.mois == mois)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def check(
    db: AsyncSession,
    rubrique: str,
    montant: Any,
    devise: str | None,
    mois: str,
) -> BudgetCheckResult:
    requested = normalize_amount(montant, devise)
    mois = check_month(mois)
    envelope = await _envelope(db, rubrique, mois)
    if envelope is None:
        return BudgetCheckResult(
            rubrique=rubrique,
            mois=mois,
            allowed=False,
            requested=requested,
            reason=REASON_NOT_FOUND,
        )

    total = to_decimal(envelope.montant_prevu)
    consumed = to_decimal(envelope.montant_consomme)
    remaining = total - consumed
    if requested <= remaining:
        return BudgetCheckResult(rubrique=rubrique, mois=mois, allowed=True, requested=requested)
    return BudgetCheckResult(
        rubrique=rubrique,
        mois=mois,
        allowed=False,
        requested=requested,
        reason=REASON_EXCEEDED,
        details={
            "budgetTotal": total,
            "consumed": consumed,
            "remaining": remaining,
            "requested": requested,
        },
    )


async def check_requisition(db: AsyncSession, requisition: Requisition) -> list[BudgetCheckResult]:
    """Failing results for the requisition's items, grouped per category."""
    mois = month_of(requisition.created_at)
    per_rubrique: dict[str, Decimal] = {}
    for ligne in requisition.lignes:
        per_rubrique[ligne.rubrique] = per_rubrique.get(ligne.rubrique, Decimal("0")) + to_decimal(ligne.prix_total)

    failures: list[BudgetCheckResult] = []
    for rubrique, montant in per_rubrique.items():
        result = await check(db, rubrique, montant, requisition.devise, mois)
        if not result.allowed:
            failures.append(result)
    return failures


async def ensure_within_budget(db: AsyncSession, rubrique: str, montant: Any, devise: str | None, mois: str) -> None:
    result = await check(db, rubrique, montant, devise, mois)
    if not result.allowed:
        raise BudgetExceeded(
            f"Budget insuffisant pour {rubrique} ({mois})",
            details=[result.reason or REASON_EXCEEDED],
            data=result.as_dict(),
        )


async def record_consumption(db: AsyncSession, rubrique: str, montant: Decimal, mois: str) -> bool:
    """Add ``montant`` (reference currency) to the envelope's consumed amount.

    Returns False when no envelope exists for the category and month.
    """
    res = await db.execute(
        update(Budget)
        .where(Budget.rubrique == rubrique, Budget.mois == mois)
        .values(montant_consomme=Budget.montant_consomme + to_decimal(montant))
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        logger.info("No budget envelope for %s (%s), consumption not recorded", rubrique, mois)
        return False
    return True


async def list_envelopes(db: AsyncSession, mois: str | None = None, annee: int | None = None) -> list[Budget]:
    stmt = select(Budget)
    if mois:
        stmt = stmt.where(Budget.mois == check_month(mois))
    if annee:
        stmt = stmt.where(Budget.annee == annee)
    res = await db.execute(stmt.order_by(Budget.mois, Budget.rubrique))
    return list(res.scalars().all())


async def create_envelope(
    db: AsyncSession,
    *,
    rubrique: str,
    mois: str,
    montant_prevu: Any,
    classification: str | None = None,
) -> Budget:
    rubrique = (rubrique or "").strip()
    if not rubrique:
        raise ValidationError("La rubrique est requise")
    mois = check_month(mois)
    montant = to_decimal(montant_prevu)
    if montant <= 0:
        raise ValidationError("Le montant prévu doit être supérieur à 0")
    if await _envelope(db, rubrique, mois) is not None:
        raise ValidationError("Cette ligne budgétaire existe déjà pour ce mois.")

    envelope = Budget(
        rubrique=rubrique,
        mois=mois,
        annee=int(mois[:4]),
        montant_prevu=montant,
        montant_consomme=Decimal("0"),
        classification=classification or "NON_ALLOUE",
    )
    db.add(envelope)
    await db.flush()
    return envelope


def _parse_amount(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        return to_decimal(value)
    cleaned = re.sub(r"[^0-9.,]", "", str(value)).replace(",", ".")
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except ArithmeticError:
        return None


def _detect_header(rows: list[tuple]) -> tuple[int, dict[str, int]] | None:
    for index, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        columns: dict[str, int] = {}
        for col, cell in enumerate(row):
            if not isinstance(cell, str):
                continue
            label = cell.strip().lower()
            if label in _DESCRIPTION_HEADERS:
                columns["description"] = col
            elif label in _AMOUNT_HEADERS:
                columns["montant"] = col
            elif label in _CLASSIFICATION_HEADERS:
                columns["classification"] = col
        if "description" in columns and "montant" in columns:
            return index, columns
    return None


def read_budget_rows(content: bytes) -> list[dict[str, Any]]:
    """Extract ``{rubrique, montant, classification}`` rows from the first sheet."""
    wb = load_workbook(filename=BytesIO(content), data_only=True, read_only=True)
    try:
        ws = wb.worksheets[0]
        rows = [tuple(r) for r in ws.iter_rows(values_only=True)]
    finally:
        wb.close()
    if not rows:
        raise ValidationError("Le fichier Excel est vide ou illisible.")

    header = _detect_header(rows)
    if header is None:
        raise ValidationError(
            "Ligne d'en-tête introuvable",
            details=[f"Colonnes description et montant attendues dans les {HEADER_SCAN_ROWS} premières lignes"],
        )
    header_index, columns = header

    out: list[dict[str, Any]] = []
    for row in rows[header_index + 1:]:
        if not row:
            continue

        def cell(name: str) -> Any:
            col = columns.get(name)
            if col is None or col >= len(row):
                return None
            return row[col]

        description = cell("description")
        montant = _parse_amount(cell("montant"))
        if not description or montant is None or montant == 0:
            continue
        classification = cell("classification")
        out.append(
            {
                "rubrique": str(description).strip(),
                "montant": montant,
                "classification": str(classification).strip() if classification else "Autre",
            }
        )
    return out


async def import_envelopes_from_excel(db: AsyncSession, content: bytes, mois: str, annee: int) -> int:
    """Upsert envelopes for ``mois`` from an Excel sheet; returns the row count."""
    mois = check_month(mois)
    rows = read_budget_rows(content)
    count = 0
    for row in rows:
        envelope = await _envelope(db, row["rubrique"], mois)
        if envelope is None:
            db.add(
                Budget(
                    rubrique=row["rubrique"],
                    mois=mois,
                    annee=annee,
                    montant_prevu=row["montant"],
                    montant_consomme=Decimal("0"),
                    classification=row["classification"],
                )
            )
        else:
            envelope.montant_prevu = row["montant"]
            envelope.classification = row["classification"]
        await db.flush()
        count += 1
    logger.info("Budget import for %s: %s lines", mois, count)
    return count
