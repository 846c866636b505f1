from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import BordereauNotFound, InvalidTransition, PermissionDenied, ValidationError
from app.models.bordereau import Bordereau, StatutBordereau
from app.models.requisition import ModePaiement, Niveau, Requisition, Statut
from app.models.user import User
from app.services.audit_service import log_action
from app.services.document_sequences import generate_document_number


logger = logging.getLogger("workflow_api.compilations")

COMPILE_ROLES = {"compilateur", "analyste", "admin"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def totals_by_devise(requisitions: list[Requisition]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for req in requisitions:
        totals[req.devise] = totals.get(req.devise, Decimal("0")) + req.montant
    return totals


async def get_bordereau(db: AsyncSession, bordereau_id: int) -> Bordereau:
    res = await db.execute(
        select(Bordereau).where(Bordereau.id == bordereau_id).execution_options(populate_existing=True)
    )
    bordereau = res.scalar_one_or_none()
    if bordereau is None:
        raise BordereauNotFound(bordereau_id)
    return bordereau


async def list_bordereaux(db: AsyncSession) -> list[Bordereau]:
    res = await db.execute(select(Bordereau).order_by(Bordereau.created_at.desc(), Bordereau.id.desc()))
    return list(res.scalars().all())


async def compile_bordereau(
    db: AsyncSession,
    requisition_ids: list[uuid.UUID],
    actor: User,
) -> Bordereau:
    """Group validated, uncompiled requisitions under a new numbered batch."""
    if actor.role not in COMPILE_ROLES:
        raise PermissionDenied("Rôle non autorisé à compiler un bordereau")
    if not requisition_ids:
        raise ValidationError("Aucune réquisition sélectionnée")
    ids = list(dict.fromkeys(requisition_ids))

    res = await db.execute(select(Requisition).where(Requisition.id.in_(ids)))
    found = {req.id: req for req in res.scalars().all()}
    missing = [str(i) for i in ids if i not in found]
    if missing:
        raise ValidationError("Réquisitions introuvables", details=missing)

    details: list[str] = []
    for requisition_id in ids:
        req = found[requisition_id]
        if req.bordereau_id is not None:
            details.append(f"{req.numero}: déjà compilée dans le bordereau {req.bordereau_id}")
        elif req.niveau != Niveau.PAIEMENT or req.statut != Statut.VALIDEE:
            details.append(f"{req.numero}: non validée ({req.niveau.value}/{req.statut.value})")
    if details:
        raise InvalidTransition("Compilation impossible", details=details)

    numero = await generate_document_number(db, "BORD")
    bordereau = Bordereau(numero=numero, statut=StatutBordereau.CREE, createur_id=actor.id, created_at=_utcnow())
    db.add(bordereau)
    await db.flush()

    stamped = await db.execute(
        update(Requisition)
        .where(Requisition.id.in_(ids), Requisition.bordereau_id.is_(None))
        .values(bordereau_id=bordereau.id, updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    if stamped.rowcount != len(ids):
        raise InvalidTransition("Une réquisition a été compilée entre-temps")

    await log_action(
        db,
        user_id=actor.id,
        action="bordereau.compile",
        entity_type="bordereaux",
        entity_id=bordereau.id,
        new_value={"numero": numero, "requisitions": [found[i].numero for i in ids]},
    )
    logger.info("Bordereau %s compiled by %s with %s requisition(s)", numero, actor.id, len(ids))
    return await get_bordereau(db, bordereau.id)


async def align_bordereau(
    db: AsyncSession,
    bordereau_id: int,
    actor: User,
    mode_paiement: ModePaiement | str | None = None,
) -> Bordereau:
    if actor.role not in COMPILE_ROLES:
        raise PermissionDenied("Rôle non autorisé à aligner un bordereau")
    bordereau = await get_bordereau(db, bordereau_id)
    mode = ModePaiement(mode_paiement) if mode_paiement else None

    res = await db.execute(
        update(Bordereau)
        .where(Bordereau.id == bordereau_id, Bordereau.statut == StatutBordereau.CREE)
        .values(statut=StatutBordereau.ALIGNE, aligned_at=_utcnow(), mode_paiement=mode)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise InvalidTransition(f"Bordereau {bordereau.numero} déjà aligné")

    if mode is not None:
        await db.execute(
            update(Requisition)
            .where(Requisition.bordereau_id == bordereau_id)
            .values(mode_paiement=mode, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )

    await log_action(
        db,
        user_id=actor.id,
        action="bordereau.align",
        entity_type="bordereaux",
        entity_id=bordereau_id,
        old_value={"statut": StatutBordereau.CREE.value},
        new_value={"statut": StatutBordereau.ALIGNE.value, "mode_paiement": mode.value if mode else None},
    )
    logger.info("Bordereau %s aligned by %s", bordereau.numero, actor.id)
    return await get_bordereau(db, bordereau_id)


def bordereau_summary(bordereau: Bordereau) -> dict[str, Any]:
    reqs = list(bordereau.requisitions)
    return {
        "id": bordereau.id,
        "numero": bordereau.numero,
        "statut": bordereau.statut.value,
        "createur_id": str(bordereau.createur_id) if bordereau.createur_id else None,
        "mode_paiement": bordereau.mode_paiement.value if bordereau.mode_paiement else None,
        "created_at": bordereau.created_at,
        "aligned_at": bordereau.aligned_at,
        "nombre_requisitions": len(reqs),
        "totaux": {devise: str(total) for devise, total in totals_by_devise(reqs).items()},
    }
