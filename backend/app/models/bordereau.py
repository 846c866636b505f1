from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.requisition import ModePaiement


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatutBordereau(str, enum.Enum):
    CREE = "cree"
    ALIGNE = "aligne"


class Bordereau(Base):
    __tablename__ = "bordereaux"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    numero: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    statut: Mapped[StatutBordereau] = mapped_column(
        Enum(
            StatutBordereau,
            name="statut_bordereau",
            native_enum=False,
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        nullable=False,
        default=StatutBordereau.CREE,
    )
    createur_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    mode_paiement: Mapped[ModePaiement | None] = mapped_column(
        Enum(
            ModePaiement,
            name="mode_paiement",
            native_enum=False,
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    aligned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    requisitions = relationship("Requisition", lazy="selectin", order_by="Requisition.numero")
