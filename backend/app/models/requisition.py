from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Niveau(str, enum.Enum):
    EMETTEUR = "emetteur"
    ANALYSTE = "analyste"
    CHALLENGER = "challenger"
    VALIDATEUR = "validateur"
    GM = "gm"
    PAIEMENT = "paiement"
    TERMINE = "termine"


class Statut(str, enum.Enum):
    SOUMISE = "soumise"
    EN_COURS = "en_cours"
    A_CORRIGER = "a_corriger"
    VALIDEE = "validee"
    REFUSEE = "refusee"
    PAYEE = "payee"
    ANNULEE = "annulee"


class ActionKind(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    COMMENT = "comment"
    PAY = "pay"


class ModePaiement(str, enum.Enum):
    CASH = "cash"
    BANQUE = "banque"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [item.value for item in enum_cls]


class Requisition(Base):
    __tablename__ = "requisitions"
    __table_args__ = (
        CheckConstraint(
            "(COALESCE(montant_usd, 0) > 0 AND COALESCE(montant_cdf, 0) = 0)"
            " OR (COALESCE(montant_cdf, 0) > 0 AND COALESCE(montant_usd, 0) = 0)",
            name="single_currency",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    numero: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    objet: Mapped[str] = mapped_column(Text, nullable=False)
    montant_usd: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    montant_cdf: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)

    niveau: Mapped[Niveau] = mapped_column(
        Enum(Niveau, name="niveau_requisition", native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=Niveau.EMETTEUR,
        index=True,
    )
    statut: Mapped[Statut] = mapped_column(
        Enum(Statut, name="statut_requisition", native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=Statut.SOUMISE,
        index=True,
    )
    # Optimistic concurrency token, bumped by every stage transition.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    emetteur_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    service_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    bordereau_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("bordereaux.id"),
        nullable=True,
        index=True,
    )
    mode_paiement: Mapped[ModePaiement | None] = mapped_column(
        Enum(ModePaiement, name="mode_paiement", native_enum=False, values_callable=_enum_values),
        nullable=True,
    )
    related_to: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("requisitions.id"), nullable=True)
    budget_impacted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    lignes: Mapped[list["LigneRequisition"]] = relationship(
        "LigneRequisition",
        back_populates="requisition",
        cascade="all, delete-orphan",
        order_by="LigneRequisition.position",
        lazy="selectin",
    )

    @property
    def devise(self) -> str:
        return "USD" if (self.montant_usd or 0) > 0 else "CDF"

    @property
    def montant(self) -> Decimal:
        if (self.montant_usd or 0) > 0:
            return self.montant_usd
        return self.montant_cdf or Decimal("0")
