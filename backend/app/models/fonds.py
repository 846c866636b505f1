from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Fonds(Base):
    """Available cash balance for one currency."""

    __tablename__ = "fonds"
    __table_args__ = (CheckConstraint("montant_disponible >= 0", name="solde_positif"),)

    devise: Mapped[str] = mapped_column(String(3), primary_key=True)
    montant_disponible: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class MouvementFonds(Base):
    __tablename__ = "mouvements_fonds"
    __table_args__ = (
        CheckConstraint("montant > 0", name="montant_positif"),
        CheckConstraint("type_mouvement IN ('entree', 'sortie')", name="type_mouvement"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type_mouvement: Mapped[str] = mapped_column(String(10), nullable=False)
    montant: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    devise: Mapped[str] = mapped_column(String(3), ForeignKey("fonds.devise"), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    solde_apres: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    requisition_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
