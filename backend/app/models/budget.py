from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Budget(Base):
    """Monthly spending envelope for one spend category."""

    __tablename__ = "budgets"
    __table_args__ = (UniqueConstraint("rubrique", "mois", name="uq_budgets_rubrique_mois"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rubrique: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    mois: Mapped[str] = mapped_column(String(7), nullable=False, index=True)  # YYYY-MM
    annee: Mapped[int] = mapped_column(Integer, nullable=False)
    classification: Mapped[str] = mapped_column(String(50), nullable=False, default="NON_ALLOUE")

    montant_prevu: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=0)
    montant_consomme: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
