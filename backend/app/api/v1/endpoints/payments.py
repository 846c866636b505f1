from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_roles
from app.db.session import get_db
from app.models.fonds import MouvementFonds
from app.models.user import User
from app.schemas.payment import FondsOut, LedgerReportOut, MouvementOut, RavitaillementIn
from app.services import fund_ledger
from app.services.audit_service import get_request_ip, log_action

router = APIRouter()
logger = logging.getLogger("workflow_api.payments")

FUND_ROLES = ("comptable", "admin")


def _movement_out(m: MouvementFonds) -> dict[str, Any]:
    return {
        "id": m.id,
        "type_mouvement": m.type_mouvement,
        "montant": m.montant,
        "devise": m.devise,
        "description": m.description,
        "solde_apres": m.solde_apres,
        "requisition_id": str(m.requisition_id) if m.requisition_id else None,
        "created_at": m.created_at,
    }


@router.get("/fonds", response_model=list[FondsOut])
async def list_fonds(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(FUND_ROLES)),
) -> list[FondsOut]:
    return [FondsOut.model_validate(f) for f in await fund_ledger.list_funds(db)]


@router.get("/mouvements", response_model=list[MouvementOut])
async def list_mouvements(
    devise: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(FUND_ROLES)),
) -> list[MouvementOut]:
    rows = await fund_ledger.list_movements(db, devise=devise, limit=limit)
    return [MouvementOut(**_movement_out(m)) for m in rows]


@router.post("/ravitaillement", response_model=FondsOut, status_code=status.HTTP_201_CREATED)
async def ravitaillement(
    payload: RavitaillementIn,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(FUND_ROLES)),
) -> FondsOut:
    before = await fund_ledger.get_balance(db, payload.devise)
    fund = await fund_ledger.credit(
        db,
        payload.devise,
        payload.montant,
        payload.description or "Ravitaillement caisse",
        user_id=user.id,
    )
    await log_action(
        db,
        user_id=user.id,
        action="fonds.ravitaillement",
        entity_type="fonds",
        entity_id=fund.devise,
        old_value={"montant_disponible": str(before)},
        new_value={"montant_disponible": str(fund.montant_disponible), "montant": str(payload.montant)},
        ip_address=get_request_ip(request),
    )
    await db.commit()
    return FondsOut.model_validate(fund)


@router.get("/verify", response_model=LedgerReportOut)
async def verify_ledger(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(FUND_ROLES)),
) -> LedgerReportOut:
    discrepancies = await fund_ledger.ledger_discrepancies(db)
    if discrepancies:
        logger.warning("Ledger discrepancies: %s", discrepancies)
    return LedgerReportOut(ok=not discrepancies, discrepancies=discrepancies)
