from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowSetting(Base):
    __tablename__ = "workflow_settings"

    niveau: Mapped[str] = mapped_column(String(30), primary_key=True)
    # 0 disables the automatic validation at this stage.
    delai_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
