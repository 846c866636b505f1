from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.requisition import Niveau, Statut


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequisitionAction(Base):
    """Append-only log of successful workflow transitions."""

    __tablename__ = "requisition_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    requisition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("requisitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # NULL for the automatic validation sweep.
    utilisateur_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    commentaire: Mapped[str | None] = mapped_column(Text, nullable=True)
    niveau_avant: Mapped[Niveau] = mapped_column(
        Enum(Niveau, name="niveau_requisition", native_enum=False, values_callable=lambda e: [i.value for i in e]),
        nullable=False,
    )
    niveau_apres: Mapped[Niveau] = mapped_column(
        Enum(Niveau, name="niveau_requisition", native_enum=False, values_callable=lambda e: [i.value for i in e]),
        nullable=False,
    )
    statut_avant: Mapped[Statut] = mapped_column(
        Enum(Statut, name="statut_requisition", native_enum=False, values_callable=lambda e: [i.value for i in e]),
        nullable=False,
    )
    statut_apres: Mapped[Statut] = mapped_column(
        Enum(Statut, name="statut_requisition", native_enum=False, values_callable=lambda e: [i.value for i in e]),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
