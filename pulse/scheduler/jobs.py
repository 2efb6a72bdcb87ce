"""PULSE — Scheduler Jobs.

APScheduler interval jobs: sync every active account, and sweep idle
progress entries.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from pulse.config import Settings
from pulse.core.logging import get_logger
from pulse.services.container import Services

logger = get_logger("scheduler")


async def sync_all_job(services: Services):
    """Periodic sync of every active account."""
    logger.info("Scheduled sync-all starting...")
    try:
        outcomes = await services.sync_engine.sync_all_accounts()
        succeeded = sum(1 for o in outcomes if o.success)
        logger.info(f"Scheduled sync-all complete: {succeeded}/{len(outcomes)} succeeded")
    except Exception as e:
        logger.error(f"Scheduled sync-all failed: {e}")


def sweep_progress_job(services: Services):
    services.progress.sweep()


def start_scheduler(services: Services, settings: Settings) -> AsyncIOScheduler | None:
    """Configure and start the scheduler. Returns None when disabled."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return None

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        sync_all_job,
        "interval",
        minutes=settings.sync_interval_minutes,
        args=[services],
        id="sync_all_accounts",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=600,
    )
    scheduler.add_job(
        sweep_progress_job,
        "interval",
        minutes=settings.progress_sweep_minutes,
        args=[services],
        id="sweep_progress",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Sync-all every {settings.sync_interval_minutes} min")
    return scheduler


def stop_scheduler(scheduler: AsyncIOScheduler | None):
    """Shutdown the scheduler gracefully."""
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
