from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_roles
from app.core.config import settings as app_settings
from app.db.session import get_db
from app.models.user import User
from app.schemas.settings import WorkflowSettingsIn, WorkflowSettingsOut
from app.services import workflow
from app.services.audit_service import log_action

router = APIRouter()


def _out(delays: dict[str, int]) -> WorkflowSettingsOut:
    return WorkflowSettingsOut(
        settings=delays,
        enabled=app_settings.auto_validation_enabled,
        interval_minutes=app_settings.auto_validation_interval_minutes,
    )


@router.get("/workflow", response_model=WorkflowSettingsOut)
async def get_workflow_settings(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(["admin"])),
) -> WorkflowSettingsOut:
    return _out(await workflow.get_auto_validation_delays(db))


@router.put("/workflow", response_model=WorkflowSettingsOut)
async def update_workflow_settings(
    payload: WorkflowSettingsIn,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_roles(["admin"])),
) -> WorkflowSettingsOut:
    before = await workflow.get_auto_validation_delays(db)
    delays = await workflow.set_auto_validation_delays(db, payload.settings)
    await log_action(
        db,
        user_id=user.id,
        action="workflow_settings.update",
        entity_type="workflow_settings",
        old_value=before,
        new_value=delays,
    )
    await db.commit()
    return _out(delays)
