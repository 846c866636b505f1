from __future__ import annotations

from decimal import Decimal

from pydantic import ConfigDict, Field

from app.schemas.base import DecimalBaseModel


class BudgetCheckIn(DecimalBaseModel):
    # Spend category (budget line description).
    description: str = Field(min_length=1)
    montant: Decimal = Field(gt=0)
    mois: str = Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    devise: str | None = None


class BudgetCheckOut(DecimalBaseModel):
    allowed: bool
    reason: str | None = None
    details: dict[str, str] | None = None


class BudgetCreate(DecimalBaseModel):
    rubrique: str = Field(min_length=1)
    mois: str = Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    montant_prevu: Decimal = Field(gt=0)
    classification: str | None = None


class BudgetOut(DecimalBaseModel):
    id: int
    rubrique: str
    mois: str
    annee: int
    classification: str
    montant_prevu: Decimal
    montant_consomme: Decimal
    montant_restant: Decimal

    model_config = ConfigDict(json_encoders={Decimal: str})


class BudgetImportOut(DecimalBaseModel):
    success: bool
    count: int
