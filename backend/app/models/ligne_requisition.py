from __future__ import annotations

import uuid

from decimal import Decimal

from sqlalchemy import ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class LigneRequisition(Base):
    __tablename__ = "lignes_requisition"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    requisition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("requisitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Spend category, matched against budget envelopes.
    rubrique: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantite: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    prix_unitaire: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    prix_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    site_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    requisition = relationship("Requisition", back_populates="lignes")
