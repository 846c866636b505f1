from __future__ import annotations

from pydantic import Field

from app.schemas.base import DecimalBaseModel


class WorkflowSettingsIn(DecimalBaseModel):
    # Stage -> auto-validation delay in minutes, 0 disables.
    settings: dict[str, int] = Field(default_factory=dict)


class WorkflowSettingsOut(DecimalBaseModel):
    settings: dict[str, int]
    enabled: bool
    interval_minutes: int
