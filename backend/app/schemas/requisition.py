from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import Field, field_validator, model_validator

from app.schemas.base import DecimalBaseModel


ModePaiement = Literal["cash", "banque"]


class LigneRequisitionIn(DecimalBaseModel):
    rubrique: str = Field(min_length=2)
    description: str = Field(min_length=2)
    quantite: int = Field(default=1, gt=0)
    prix_unitaire: Decimal = Field(gt=0)
    site_id: str | None = None


class RequisitionCreate(DecimalBaseModel):
    objet: str = Field(min_length=3)
    devise: Literal["USD", "CDF"] = "USD"
    # Ignored when lignes are given: the amount is the sum of the line totals.
    montant: Decimal | None = Field(default=None, gt=0)
    lignes: list[LigneRequisitionIn] = []
    related_to: str | None = None

    @field_validator("devise", mode="before")
    @classmethod
    def upper_devise(cls, value: str):
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def amount_or_lines(self):
        if not self.lignes and self.montant is None:
            raise ValueError("montant ou lignes requis")
        return self


class RequisitionUpdate(DecimalBaseModel):
    objet: str | None = Field(default=None, min_length=3)
    devise: Literal["USD", "CDF"] | None = None
    montant: Decimal | None = Field(default=None, gt=0)
    lignes: list[LigneRequisitionIn] | None = None
    # Send the edited requisition back into the chain.
    resubmit: bool = False
    commentaire: str | None = None


class RequisitionActionIn(DecimalBaseModel):
    action: str
    commentaire: str | None = None
    mode_paiement: ModePaiement | None = None


class LigneRequisitionOut(DecimalBaseModel):
    id: str
    rubrique: str
    description: str
    quantite: int
    prix_unitaire: Decimal
    prix_total: Decimal
    site_id: str | None = None


class RequisitionActionOut(DecimalBaseModel):
    id: int
    utilisateur_id: str | None = None
    action: str
    commentaire: str | None = None
    niveau_avant: str
    niveau_apres: str
    statut_avant: str
    statut_apres: str
    created_at: datetime


class RequisitionOut(DecimalBaseModel):
    id: str
    numero: str
    objet: str
    montant_usd: Decimal | None = None
    montant_cdf: Decimal | None = None
    devise: str
    niveau: str
    statut: str
    version: int
    emetteur_id: str | None = None
    service_id: str | None = None
    bordereau_id: int | None = None
    mode_paiement: str | None = None
    related_to: str | None = None
    budget_impacted: bool = False
    lignes: list[LigneRequisitionOut] = []
    created_at: datetime
    updated_at: datetime


class RequisitionDetailOut(RequisitionOut):
    actions: list[RequisitionActionOut] = []


class ActionResultOut(DecimalBaseModel):
    message: str
    requisitionId: str
    numero: str
    action: str
    niveauAvant: str
    niveauApres: str
    statutAvant: str
    statutApres: str
    warnings: list[str] = []


class BatchPayIn(DecimalBaseModel):
    requisitionIds: list[str] = Field(min_length=1)
    mode_paiement: ModePaiement | None = None
