from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings


logger = logging.getLogger("workflow_api.scheduler")

scheduler = AsyncIOScheduler()


async def auto_validation_job() -> None:
    """One sweep in its own session and transaction."""
    from app.db.session import SessionLocal
    from app.services.workflow import run_auto_validation

    async with SessionLocal() as db:
        try:
            results = await run_auto_validation(db)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Auto-validation sweep failed")
            return
    if results:
        logger.info("Auto-validation sweep advanced %s requisition(s)", len(results))


def start_scheduler() -> None:
    if not settings.auto_validation_enabled:
        logger.info("Auto-validation disabled")
        return
    scheduler.add_job(
        auto_validation_job,
        trigger=IntervalTrigger(minutes=settings.auto_validation_interval_minutes),
        id="auto_validation",
        name="Auto-validate requisitions past their stage delay",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Scheduler started, active jobs: %s", len(scheduler.get_jobs()))


def stop_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
