from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_roles
from app.api.v1.endpoints.requisitions import requisition_payload
from app.db.session import get_db
from app.models.bordereau import Bordereau
from app.models.user import User
from app.schemas.bordereau import AlignementIn, BordereauDetailOut, BordereauOut, CompilationIn
from app.schemas.requisition import RequisitionOut
from app.services import bordereau as bordereau_service

router = APIRouter()


def _detail(b: Bordereau) -> BordereauDetailOut:
    return BordereauDetailOut(
        **bordereau_service.bordereau_summary(b),
        requisitions=[RequisitionOut(**requisition_payload(r)) for r in b.requisitions],
    )


@router.post("", response_model=BordereauDetailOut, status_code=status.HTTP_201_CREATED)
async def create_compilation(
    payload: CompilationIn,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(bordereau_service.COMPILE_ROLES)),
) -> BordereauDetailOut:
    try:
        ids = [uuid.UUID(value) for value in payload.requisition_ids]
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid requisition_ids")
    bordereau = await bordereau_service.compile_bordereau(db, ids, user)
    await db.commit()
    return _detail(bordereau)


@router.get("", response_model=list[BordereauOut])
async def list_compilations(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(bordereau_service.COMPILE_ROLES)),
) -> list[BordereauOut]:
    rows = await bordereau_service.list_bordereaux(db)
    return [BordereauOut(**bordereau_service.bordereau_summary(b)) for b in rows]


@router.get("/{bordereau_id}", response_model=BordereauDetailOut)
async def get_compilation(
    bordereau_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(bordereau_service.COMPILE_ROLES)),
) -> BordereauDetailOut:
    return _detail(await bordereau_service.get_bordereau(db, bordereau_id))


@router.post("/{bordereau_id}/aligner", response_model=BordereauDetailOut)
async def align_compilation(
    bordereau_id: int,
    payload: AlignementIn,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(bordereau_service.COMPILE_ROLES)),
) -> BordereauDetailOut:
    bordereau = await bordereau_service.align_bordereau(db, bordereau_id, user, payload.mode_paiement)
    await db.commit()
    return _detail(bordereau)
