"""Worker setup and lifecycle management for the retention sweep."""

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shield_audit.audit.retention import RetentionPolicyEngine
from shield_audit.workers.retention_sweeper import RetentionSweeper

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: AsyncIOScheduler | None = None
_sweeper: RetentionSweeper | None = None


async def _run_retention_sweep(sweeper: RetentionSweeper) -> None:
    """Scheduled job: apply retention decisions to the audit store."""
    try:
        report = await sweeper.run_once()
        if report.archived or report.deleted:
            logger.info(
                f"Retention sweep archived {report.archived} and deleted {report.deleted} entries"
            )
    except Exception as e:
        logger.exception(f"Retention sweep failed: {e}")


def init_workers(
    session_factory: async_sessionmaker[AsyncSession],
    engine: RetentionPolicyEngine,
    interval_minutes: int = 60,
) -> AsyncIOScheduler:
    """Start the scheduler with the retention sweep job.

    Args:
        session_factory: Factory the sweep opens its sessions from
        engine: Retention engine applying the decisions
        interval_minutes: Minutes between sweeps
    """
    global _scheduler, _sweeper

    logger.info("Initializing retention workers...")

    _sweeper = RetentionSweeper(session_factory, engine)
    _scheduler = AsyncIOScheduler()

    sweeper = _sweeper
    _scheduler.add_job(
        lambda: asyncio.create_task(_run_retention_sweep(sweeper)),
        IntervalTrigger(minutes=interval_minutes),
        id="retention_sweep",
        name="Apply audit retention policy",
        max_instances=1,
        coalesce=True,
    )

    _scheduler.start()
    logger.info(f"Retention sweep scheduled every {interval_minutes} minutes")
    return _scheduler


def get_sweeper() -> RetentionSweeper | None:
    return _sweeper


async def shutdown_workers() -> None:
    """Shutdown the scheduler."""
    global _scheduler, _sweeper

    logger.info("Shutting down retention workers...")

    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
    _sweeper = None
