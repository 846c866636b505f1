from __future__ import annotations

from datetime import datetime

from pydantic import Field

from app.schemas.base import DecimalBaseModel
from app.schemas.requisition import ModePaiement, RequisitionOut


class CompilationIn(DecimalBaseModel):
    requisition_ids: list[str] = Field(min_length=1)


class AlignementIn(DecimalBaseModel):
    mode_paiement: ModePaiement | None = None


class BordereauOut(DecimalBaseModel):
    id: int
    numero: str
    statut: str
    createur_id: str | None = None
    mode_paiement: str | None = None
    created_at: datetime
    aligned_at: datetime | None = None
    nombre_requisitions: int
    totaux: dict[str, str]


class BordereauDetailOut(BordereauOut):
    requisitions: list[RequisitionOut] = []
