from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, require_roles
from app.db.session import get_db
from app.models.budget import Budget
from app.models.user import User
from app.schemas.budget import BudgetCheckIn, BudgetCheckOut, BudgetCreate, BudgetImportOut, BudgetOut
from app.services import budget_checker
from app.services.audit_service import log_action

router = APIRouter()
logger = logging.getLogger("workflow_api.budgets")

IMPORT_ROLES = ("admin", "comptable", "pm", "analyste")
MAX_IMPORT_SIZE = 5 * 1024 * 1024


def _budget_out(b: Budget) -> BudgetOut:
    return BudgetOut(
        id=b.id,
        rubrique=b.rubrique,
        mois=b.mois,
        annee=b.annee,
        classification=b.classification,
        montant_prevu=b.montant_prevu,
        montant_consomme=b.montant_consomme,
        montant_restant=b.montant_prevu - b.montant_consomme,
    )


@router.post("/check", response_model=BudgetCheckOut)
async def check_budget(
    payload: BudgetCheckIn,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> BudgetCheckOut:
    result = await budget_checker.check(db, payload.description, payload.montant, payload.devise, payload.mois)
    return BudgetCheckOut(**result.as_dict())


@router.get("", response_model=list[BudgetOut])
async def list_budgets(
    mois: str | None = Query(default=None),
    annee: int | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[BudgetOut]:
    return [_budget_out(b) for b in await budget_checker.list_envelopes(db, mois=mois, annee=annee)]


@router.post("", response_model=BudgetOut, status_code=status.HTTP_201_CREATED)
async def create_budget(
    payload: BudgetCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(["admin"])),
) -> BudgetOut:
    envelope = await budget_checker.create_envelope(
        db,
        rubrique=payload.rubrique,
        mois=payload.mois,
        montant_prevu=payload.montant_prevu,
        classification=payload.classification,
    )
    await log_action(
        db,
        user_id=user.id,
        action="budget.create",
        entity_type="budgets",
        entity_id=envelope.id,
        new_value={"rubrique": envelope.rubrique, "mois": envelope.mois, "montant_prevu": str(envelope.montant_prevu)},
    )
    await db.commit()
    await db.refresh(envelope)
    return _budget_out(envelope)


@router.post("/import", response_model=BudgetImportOut)
async def import_budget(
    file: UploadFile = File(...),
    mois: str = Form(...),
    annee: int = Form(...),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(IMPORT_ROLES)),
) -> BudgetImportOut:
    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Aucun fichier fourni")
    if len(content) > MAX_IMPORT_SIZE:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Fichier trop volumineux")

    count = await budget_checker.import_envelopes_from_excel(db, content, mois, annee)
    await log_action(
        db,
        user_id=user.id,
        action="budget.import",
        entity_type="budgets",
        new_value={"mois": mois, "annee": annee, "count": count, "filename": file.filename},
    )
    await db.commit()
    return BudgetImportOut(success=True, count=count)
