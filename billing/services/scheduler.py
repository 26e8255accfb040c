"""Internal task scheduler using APScheduler.

Runs the subscription lifecycle sweep within the FastAPI process.
Uses PostgreSQL advisory locks to prevent duplicate execution when
multiple instances are running.
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text

from billing.config import settings
from billing.core.database import direct_session_maker

logger = logging.getLogger(__name__)

# Advisory lock IDs (arbitrary unique integers, one per job)
LIFECYCLE_SWEEP_LOCK_ID = 735001


@asynccontextmanager
async def advisory_lock(lock_id: int) -> AsyncIterator[bool]:
    """
    Acquire a PostgreSQL advisory lock for the duration of the context.

    Advisory locks are session-level, so this uses the direct (unpooled)
    connection. pg_try_advisory_lock() returns immediately: if another
    instance holds the lock, we skip this run.
    """
    async with direct_session_maker() as session:
        result = await session.execute(
            text("SELECT pg_try_advisory_lock(:lock_id)"),
            {"lock_id": lock_id},
        )
        acquired = result.scalar()

        if not acquired:
            yield False
            return

        try:
            yield True
        finally:
            await session.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"),
                {"lock_id": lock_id},
            )
            await session.commit()


async def run_lifecycle_sweep() -> dict[str, Any] | None:
    """
    Execute the lifecycle sweep with advisory lock protection.

    Returns the report dict if executed, None if skipped or failed.
    """
    async with advisory_lock(LIFECYCLE_SWEEP_LOCK_ID) as acquired:
        if not acquired:
            logger.info("[scheduler] Lifecycle sweep: skipped (another instance is running)")
            return None

        try:
            from billing.services.lifecycle_sweep import lifecycle_sweep

            async with direct_session_maker() as db:
                report = await lifecycle_sweep.run(db)
                await db.commit()

            if report.cancelled or report.expired or report.conflicts:
                logger.info(
                    f"[scheduler] Lifecycle sweep: {report.cancelled} cancelled, "
                    f"{report.expired} expired, {report.conflicts} conflicts "
                    f"({report.duration_seconds}s)"
                )
            return asdict(report)

        except Exception as e:
            logger.exception(f"[scheduler] Lifecycle sweep: failed with error: {e}")
            return None


# job id -> coroutine, for registration and manual triggering
JOBS: dict[str, Callable[[], Awaitable[dict[str, Any] | None]]] = {
    "lifecycle_sweep": run_lifecycle_sweep,
}


class Scheduler:
    """Owns the APScheduler instance for the lifetime of the app."""

    def __init__(self) -> None:
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if not settings.scheduler_enabled:
            logger.info("[scheduler] Disabled via SCHEDULER_ENABLED=false")
            return

        self._scheduler = AsyncIOScheduler(timezone="UTC")

        # Every instance schedules the sweep; the advisory lock lets one run it
        self._scheduler.add_job(
            JOBS["lifecycle_sweep"],
            trigger=IntervalTrigger(minutes=settings.lifecycle_sweep_minutes),
            id="lifecycle_sweep",
            name="Subscription Lifecycle Sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.start()
        logger.info(f"[scheduler] Started with lifecycle sweep every {settings.lifecycle_sweep_minutes} min")

    def stop(self) -> None:
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("[scheduler] Stopped")

    async def trigger_now(self, job_id: str) -> dict[str, Any] | None:
        """Run a job immediately, outside its schedule. None for an unknown job id."""
        job = JOBS.get(job_id)
        if job is None:
            logger.warning(f"[scheduler] Unknown job: {job_id}")
            return None
        return await job()


scheduler = Scheduler()
