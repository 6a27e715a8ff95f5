# backend/progeodata/services/scheduler_service.py
"""
Scrape Schedule Runner

Each ScrapeSchedule row is a recurring job. On every tick:

1. Skip unless enabled, due (now >= next_run_at), inside the
   [start_time, end_time] window and on an allowed ISO weekday
2. Select up to zip_limit_per_run work items with the schedule's strategy
3. enqueue() each one (duplicates in flight are skipped, not errors)
4. Advance next_run_at (cron or frequency_hours) even if the run failed
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import List, Optional
import logging
import random

from croniter import croniter
from sqlalchemy import or_, and_
from sqlalchemy.orm import Session

from progeodata.exceptions import DuplicateWorkItem, RetryNotAllowed
from progeodata.models import ScrapeSchedule, ScrapeQueueWorkItem
from progeodata.services.work_queue import WorkQueue
from progeodata.utils import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ScheduleRunResult:
    """Outcome of one schedule tick"""
    schedule_id: str
    name: str
    status: str  # success, failed, skipped
    reason: Optional[str] = None
    selected: int = 0
    enqueued: int = 0
    skipped: int = 0
    next_run_at: Optional[datetime] = None
    source_types: List[str] = field(default_factory=list)
    max_concurrent: int = 1
    delay_between_requests_ms: int = 0

    @property
    def ran(self) -> bool:
        return self.status != "skipped"


def calculate_next_run(schedule: ScrapeSchedule, now: datetime) -> datetime:
    """Next run strictly after `now`; cron takes precedence over frequency_hours."""
    if schedule.cron_expression:
        return croniter(schedule.cron_expression, now).get_next(datetime)

    step = timedelta(hours=schedule.frequency_hours or 24)
    next_run = schedule.next_run_at or now
    while next_run <= now:
        next_run += step
    return next_run


def within_window(schedule: ScrapeSchedule, now: datetime) -> bool:
    """Time-of-day window (may wrap past midnight) and ISO weekday check."""
    if schedule.days_of_week and now.isoweekday() not in schedule.days_of_week:
        return False

    start, end = schedule.start_time, schedule.end_time
    if start is None and end is None:
        return True

    current = now.time()
    start = start or time.min
    end = end or time.max
    if start <= end:
        return start <= current <= end
    # Overnight window, e.g. 22:00 -> 06:00
    return current >= start or current <= end


class ScheduleRunner:
    """Evaluates ScrapeSchedule rows and feeds the work queue."""

    def __init__(self, db: Session, clock: Clock = utcnow, queue: Optional[WorkQueue] = None):
        self.db = db
        self.clock = clock
        self.queue = queue or WorkQueue(db, clock=clock)

    # ========================================================================
    # CRUD
    # ========================================================================

    def create_schedule(self, name: str, **fields) -> ScrapeSchedule:
        now = self.clock()
        schedule = ScrapeSchedule(name=name, created_at=now, updated_at=now, **fields)
        if schedule.next_run_at is None:
            schedule.next_run_at = now
        self.db.add(schedule)
        self.db.commit()
        logger.info(f"Created schedule '{name}' (next run {schedule.next_run_at})")
        return schedule

    def set_enabled(self, schedule_id, enabled: bool) -> ScrapeSchedule:
        """Disabling stops new enqueues; in-flight items are left to finish."""
        schedule = self.db.get(ScrapeSchedule, schedule_id)
        if schedule is None:
            raise ValueError(f"Schedule {schedule_id} not found")

        schedule.enabled = enabled
        schedule.updated_at = self.clock()
        self.db.commit()
        logger.info(f"Schedule '{schedule.name}' {'enabled' if enabled else 'disabled'}")
        return schedule

    # ========================================================================
    # SELECTION
    # ========================================================================

    def _eligible(self, schedule: ScrapeSchedule, now: datetime, failed_only: bool = False):
        retryable_failed = and_(
            ScrapeQueueWorkItem.status == "failed",
            ScrapeQueueWorkItem.needs_review.is_(False),
            ScrapeQueueWorkItem.consecutive_failures < self.queue.max_retries,
            or_(ScrapeQueueWorkItem.next_retry_at.is_(None), ScrapeQueueWorkItem.next_retry_at <= now)
        )
        if failed_only:
            query = self.db.query(ScrapeQueueWorkItem).filter(retryable_failed)
        else:
            eligible = [ScrapeQueueWorkItem.status == "pending", retryable_failed]
            cutoff = self.queue.stale_completed_cutoff(now)
            if cutoff is not None:
                # enqueue() re-arms these before queueing
                eligible.append(and_(
                    ScrapeQueueWorkItem.status == "completed",
                    ScrapeQueueWorkItem.completed_at <= cutoff
                ))
            query = self.db.query(ScrapeQueueWorkItem).filter(or_(*eligible))

        if schedule.states:
            query = query.filter(ScrapeQueueWorkItem.state.in_(schedule.states))
        if schedule.source_types:
            query = query.filter(ScrapeQueueWorkItem.source_type.in_(schedule.source_types))
        if schedule.professions:
            query = query.filter(ScrapeQueueWorkItem.profession.in_(schedule.professions))
        return query

    def select_targets(self, schedule: ScrapeSchedule, now: datetime) -> List[ScrapeQueueWorkItem]:
        limit = schedule.zip_limit_per_run
        strategy = schedule.strategy

        if strategy == "failed":
            return self._eligible(schedule, now, failed_only=True).order_by(
                ScrapeQueueWorkItem.next_retry_at.asc(),
                ScrapeQueueWorkItem.created_at.asc()
            ).limit(limit).all()

        if strategy == "priority":
            return self._eligible(schedule, now).order_by(
                ScrapeQueueWorkItem.priority.desc(),
                ScrapeQueueWorkItem.created_at.asc()
            ).limit(limit).all()

        if strategy == "random_sample":
            candidates = self._eligible(schedule, now).order_by(ScrapeQueueWorkItem.created_at.asc()).all()
            # Seeded per schedule + run time so a rerun picks the same sample
            rng = random.Random(f"{schedule.id}:{now.isoformat()}")
            return rng.sample(candidates, min(limit, len(candidates)))

        # all
        return self._eligible(schedule, now).order_by(
            ScrapeQueueWorkItem.created_at.asc(),
            ScrapeQueueWorkItem.zip_code.asc()
        ).limit(limit).all()

    # ========================================================================
    # TICK
    # ========================================================================

    def run_schedule_tick(self, schedule: ScrapeSchedule, now: Optional[datetime] = None) -> ScheduleRunResult:
        now = now or self.clock()
        result = ScheduleRunResult(
            schedule_id=str(schedule.id),
            name=schedule.name,
            status="skipped",
            next_run_at=schedule.next_run_at,
            source_types=list(schedule.source_types or []),
            max_concurrent=schedule.max_concurrent,
            delay_between_requests_ms=schedule.delay_between_requests_ms
        )

        if not schedule.enabled:
            result.reason = "disabled"
            return result
        if schedule.next_run_at and now < schedule.next_run_at:
            result.reason = "not due"
            return result
        if not within_window(schedule, now):
            result.reason = "outside window"
            logger.debug(f"Schedule '{schedule.name}' due but outside its window")
            return result

        try:
            targets = self.select_targets(schedule, now)
            result.selected = len(targets)
            target_keys = [item.key for item in targets]

            for zip_code, state, source_type, profession in target_keys:
                try:
                    self.queue.enqueue(zip_code, state, source_type, profession, priority=schedule.priority)
                    result.enqueued += 1
                except (DuplicateWorkItem, RetryNotAllowed) as e:
                    logger.debug(f"Schedule '{schedule.name}' skipped {state}/{zip_code}: {e}")
                    result.skipped += 1

            result.status = "success"
            schedule.last_error = None
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Schedule '{schedule.name}' run failed: {e}", exc_info=True)
            result.status = "failed"
            result.reason = str(e)
            schedule.last_error = str(e)
        finally:
            # A failed run must not stall the schedule
            schedule.next_run_at = calculate_next_run(schedule, now)
            schedule.last_run_at = now
            schedule.last_run_status = result.status
            schedule.last_run_enqueued = result.enqueued
            schedule.total_runs = (schedule.total_runs or 0) + 1
            schedule.updated_at = now
            self.db.commit()
            result.next_run_at = schedule.next_run_at

        logger.info(
            f"⏰ Schedule '{schedule.name}' ({schedule.strategy}): {result.enqueued} enqueued, "
            f"{result.skipped} skipped, next run {result.next_run_at}"
        )
        return result

    def run_due_schedules(self, now: Optional[datetime] = None) -> List[ScheduleRunResult]:
        """Tick every enabled schedule; one broken schedule never blocks the others."""
        now = now or self.clock()
        schedules = self.db.query(ScrapeSchedule).filter(
            ScrapeSchedule.enabled.is_(True)
        ).order_by(ScrapeSchedule.next_run_at.asc()).all()

        results = []
        for schedule in schedules:
            try:
                results.append(self.run_schedule_tick(schedule, now))
            except Exception as e:
                self.db.rollback()
                logger.error(f"Error ticking schedule {schedule.name}: {e}", exc_info=True)
        return results
