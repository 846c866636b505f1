from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import ConfigDict, Field, field_validator

from app.schemas.base import DecimalBaseModel


class FondsOut(DecimalBaseModel):
    devise: str
    montant_disponible: Decimal
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True, json_encoders={Decimal: str})


class MouvementOut(DecimalBaseModel):
    id: int
    type_mouvement: str
    montant: Decimal
    devise: str
    description: str | None = None
    solde_apres: Decimal
    requisition_id: str | None = None
    created_at: datetime


class RavitaillementIn(DecimalBaseModel):
    devise: str
    montant: Decimal
    description: str | None = Field(default=None, max_length=500)

    @field_validator("devise")
    @classmethod
    def upper_devise(cls, value: str):
        return value.strip().upper()


class LedgerDiscrepancyOut(DecimalBaseModel):
    devise: str
    montant_disponible: Decimal
    somme_mouvements: Decimal
    ecart: Decimal


class LedgerReportOut(DecimalBaseModel):
    ok: bool
    discrepancies: list[LedgerDiscrepancyOut] = []
