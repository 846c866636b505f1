from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, require_roles
from app.db.session import get_db
from app.models.requisition import Niveau, Requisition, Statut
from app.models.requisition_action import RequisitionAction
from app.models.user import User
from app.schemas.requisition import (
    ActionResultOut,
    BatchPayIn,
    RequisitionActionIn,
    RequisitionActionOut,
    RequisitionCreate,
    RequisitionDetailOut,
    RequisitionOut,
    RequisitionUpdate,
)
from app.services import batch_payment, workflow

router = APIRouter()
logger = logging.getLogger("workflow_api.requisitions")

_ACTION_MESSAGES = {
    "approve": "Réquisition validée",
    "pay": "Paiement effectué",
    "reject": "Réquisition refusée",
    "comment": "Commentaire ajouté",
}


def _parse_uuid(value: str, field: str = "requisition_id") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid {field}")


def requisition_payload(req: Requisition) -> dict[str, Any]:
    return {
        "id": str(req.id),
        "numero": req.numero,
        "objet": req.objet,
        "montant_usd": req.montant_usd,
        "montant_cdf": req.montant_cdf,
        "devise": req.devise,
        "niveau": req.niveau.value,
        "statut": req.statut.value,
        "version": req.version,
        "emetteur_id": str(req.emetteur_id) if req.emetteur_id else None,
        "service_id": str(req.service_id) if req.service_id else None,
        "bordereau_id": req.bordereau_id,
        "mode_paiement": req.mode_paiement.value if req.mode_paiement else None,
        "related_to": str(req.related_to) if req.related_to else None,
        "budget_impacted": bool(req.budget_impacted),
        "lignes": [
            {
                "id": str(ligne.id),
                "rubrique": ligne.rubrique,
                "description": ligne.description,
                "quantite": ligne.quantite,
                "prix_unitaire": ligne.prix_unitaire,
                "prix_total": ligne.prix_total,
                "site_id": str(ligne.site_id) if ligne.site_id else None,
            }
            for ligne in req.lignes
        ],
        "created_at": req.created_at,
        "updated_at": req.updated_at,
    }


def _action_payload(record: RequisitionAction) -> dict[str, Any]:
    return {
        "id": record.id,
        "utilisateur_id": str(record.utilisateur_id) if record.utilisateur_id else None,
        "action": record.action,
        "commentaire": record.commentaire,
        "niveau_avant": record.niveau_avant.value,
        "niveau_apres": record.niveau_apres.value,
        "statut_avant": record.statut_avant.value,
        "statut_apres": record.statut_apres.value,
        "created_at": record.created_at,
    }


def _lignes_in(payload: RequisitionCreate | RequisitionUpdate) -> list[dict[str, Any]] | None:
    if payload.lignes is None:
        return None
    return [
        {
            **ligne.model_dump(),
            "site_id": _parse_uuid(ligne.site_id, "site_id") if ligne.site_id else None,
        }
        for ligne in payload.lignes
    ]


@router.post("", response_model=RequisitionOut, status_code=status.HTTP_201_CREATED)
async def create_requisition(
    payload: RequisitionCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> RequisitionOut:
    req = await workflow.create_requisition(
        db,
        user,
        objet=payload.objet,
        devise=payload.devise,
        lignes=_lignes_in(payload),
        montant=payload.montant,
        related_to=_parse_uuid(payload.related_to, "related_to") if payload.related_to else None,
    )
    await db.commit()
    await db.refresh(req)
    return RequisitionOut(**requisition_payload(req))


@router.get("", response_model=list[RequisitionOut])
async def list_requisitions(
    niveau: Niveau | None = Query(default=None),
    statut: Statut | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[RequisitionOut]:
    rows = await workflow.list_requisitions(db, niveau=niveau, statut=statut, limit=limit)
    return [RequisitionOut(**requisition_payload(r)) for r in rows]


@router.post("/batch-pay")
async def batch_pay(
    payload: BatchPayIn,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(batch_payment.BATCH_PAY_ROLES)),
) -> dict[str, Any]:
    ids = [_parse_uuid(value) for value in payload.requisitionIds]
    summary = await batch_payment.pay_batch(db, ids, user, payload.mode_paiement)
    await db.commit()
    return summary.as_dict()


@router.get("/{requisition_id}", response_model=RequisitionDetailOut)
async def get_requisition(
    requisition_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> RequisitionDetailOut:
    rid = _parse_uuid(requisition_id)
    req = await workflow.get_requisition(db, rid)
    actions = await workflow.list_actions(db, rid)
    return RequisitionDetailOut(
        **requisition_payload(req),
        actions=[RequisitionActionOut(**_action_payload(a)) for a in actions],
    )


@router.put("/{requisition_id}", response_model=RequisitionOut)
async def update_requisition(
    requisition_id: str,
    payload: RequisitionUpdate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> RequisitionOut:
    rid = _parse_uuid(requisition_id)
    req = await workflow.resubmit_requisition(
        db,
        user,
        rid,
        objet=payload.objet,
        devise=payload.devise,
        lignes=_lignes_in(payload),
        montant=payload.montant,
    )
    if payload.resubmit:
        await workflow.submit_action(db, rid, user, "approve", payload.commentaire or "Resoumission")
    await db.commit()
    await db.refresh(req)
    return RequisitionOut(**requisition_payload(req))


@router.put("/{requisition_id}/action", response_model=ActionResultOut)
async def submit_action(
    requisition_id: str,
    payload: RequisitionActionIn,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ActionResultOut:
    rid = _parse_uuid(requisition_id)
    result = await workflow.submit_action(
        db,
        rid,
        user,
        payload.action,
        payload.commentaire,
        payload.mode_paiement,
    )
    await db.commit()
    return ActionResultOut(message=_ACTION_MESSAGES[result.action.value], **result.as_dict())


@router.get("/{requisition_id}/actions", response_model=list[RequisitionActionOut])
async def list_actions(
    requisition_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[RequisitionActionOut]:
    actions = await workflow.list_actions(db, _parse_uuid(requisition_id))
    return [RequisitionActionOut(**_action_payload(a)) for a in actions]
