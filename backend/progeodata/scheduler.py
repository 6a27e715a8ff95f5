"""APScheduler configuration for the schedule tick and queue housekeeping."""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from typing import Dict, List, Optional
import logging

from progeodata.config import settings
from progeodata.sources.base import SourceAdapter, EnrichmentProvider

logger = logging.getLogger(__name__)

# Create scheduler instance
scheduler = AsyncIOScheduler()

# Adapters/providers the tick job dispatches with (set by start_scheduler)
_registered_sources: Dict[str, SourceAdapter] = {}
_registered_providers: List[EnrichmentProvider] = []


async def run_schedule_tick_job():
    """
    Fire every due schedule, then drain what each one enqueued.
    Called by APScheduler.
    """
    from progeodata.database import SessionLocal
    from progeodata.services.scheduler_service import ScheduleRunner
    from progeodata.services.worker import DispatchLoop

    db = SessionLocal()
    try:
        results = ScheduleRunner(db).run_due_schedules()
    except Exception as e:
        logger.error(f"Schedule tick failed: {e}", exc_info=True)
        return
    finally:
        db.close()

    ran = [r for r in results if r.ran]
    if ran:
        logger.info(f"⏰ Schedule tick: {len(ran)} schedule(s) ran")

    if not _registered_sources:
        return

    loop = DispatchLoop(SessionLocal, _registered_sources, providers=_registered_providers)
    for result in ran:
        if result.enqueued == 0:
            continue
        # An empty list means any source: drain every registered adapter
        for source_type in result.source_types or list(_registered_sources):
            if source_type not in _registered_sources:
                logger.warning(f"Schedule {result.name}: no adapter for {source_type}")
                continue
            stats = await loop.run(
                source_type=source_type,
                max_items=result.enqueued,
                max_concurrent=result.max_concurrent,
                delay_ms=result.delay_between_requests_ms
            )
            logger.info(f"Schedule {result.name} [{source_type}]: {stats}")


async def housekeeping_job():
    """Move due failed items back to queued and recover abandoned claims."""
    from progeodata.database import SessionLocal
    from progeodata.services.work_queue import WorkQueue

    db = SessionLocal()
    try:
        queue = WorkQueue(db)
        reaped = queue.reap_stale_claims()
        requeued = queue.requeue_due()
        if reaped or requeued:
            logger.info(f"🧹 Housekeeping: reaped {reaped} stale claim(s), requeued {requeued} item(s)")
    except Exception as e:
        logger.error(f"Housekeeping failed: {e}", exc_info=True)
    finally:
        db.close()


def start_scheduler(
    sources: Optional[Dict[str, SourceAdapter]] = None,
    providers: Optional[List[EnrichmentProvider]] = None
):
    """Start the APScheduler."""
    _registered_sources.clear()
    _registered_sources.update(sources or {})
    _registered_providers[:] = providers or []

    scheduler.add_job(
        run_schedule_tick_job,
        trigger=IntervalTrigger(seconds=settings.SCHEDULER_TICK_SECONDS),
        id="schedule_tick",
        name="Run due scrape schedules",
        replace_existing=True,
        max_instances=1
    )

    scheduler.add_job(
        housekeeping_job,
        trigger=IntervalTrigger(seconds=settings.HOUSEKEEPING_INTERVAL_SECONDS),
        id="queue_housekeeping",
        name="Requeue due retries and reap stale claims",
        replace_existing=True,
        max_instances=1
    )

    scheduler.start()
    logger.info("✅ Scheduler started")
    logger.info(f"   - Schedule tick every {settings.SCHEDULER_TICK_SECONDS}s")
    logger.info(f"   - Housekeeping every {settings.HOUSEKEEPING_INTERVAL_SECONDS}s")
    logger.info(f"   - {len(_registered_sources)} source adapter(s) registered")
    logger.info(f"   - {len(_registered_providers)} enrichment provider(s) registered")


def stop_scheduler():
    """Stop the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("🛑 Scheduler stopped")
