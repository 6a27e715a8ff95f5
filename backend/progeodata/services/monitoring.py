# backend/progeodata/services/monitoring.py
"""
Operational read-only views over the pipeline tables.

Nothing here writes; these back the monitoring endpoints and the
coordinator-style alerts (high error rate, stale queue).
"""

from datetime import datetime, timedelta
from typing import List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from progeodata.config import settings
from progeodata.models import (
    ScrapeQueueWorkItem, QueueMessage, RateLimitBucket, ScrapeSchedule, WORK_ITEM_STATUSES
)
from progeodata.schemas.pipeline import (
    Alert, QueueHealth, RateLimitStatus, WindowUsage, ScheduleStatus
)
from progeodata.services.rate_limiter import WINDOWS, throttle_remaining
from progeodata.utils import utcnow

logger = logging.getLogger(__name__)


def queue_health(db: Session, now: Optional[datetime] = None) -> QueueHealth:
    """Counts per status / source type, retry backlog and alerts."""
    now = now or utcnow()
    max_retries = settings.QUEUE_MAX_RETRIES

    by_status = {status: 0 for status in WORK_ITEM_STATUSES}
    by_source_type = {}
    rows = db.query(
        ScrapeQueueWorkItem.source_type,
        ScrapeQueueWorkItem.status,
        func.count(ScrapeQueueWorkItem.id)
    ).group_by(ScrapeQueueWorkItem.source_type, ScrapeQueueWorkItem.status).all()
    for source_type, status, count in rows:
        by_status[status] = by_status.get(status, 0) + count
        by_source_type.setdefault(source_type, {})[status] = count

    failed = db.query(ScrapeQueueWorkItem).filter(ScrapeQueueWorkItem.status == "failed")
    awaiting_review = failed.filter(ScrapeQueueWorkItem.needs_review.is_(True)).count()
    retries_exhausted = failed.filter(
        ScrapeQueueWorkItem.needs_review.is_(False),
        ScrapeQueueWorkItem.consecutive_failures >= max_retries
    ).count()
    retry_backlog = failed.filter(
        ScrapeQueueWorkItem.needs_review.is_(False),
        ScrapeQueueWorkItem.consecutive_failures < max_retries
    ).count()

    oldest_queued = db.query(func.min(ScrapeQueueWorkItem.queued_at)).filter(
        ScrapeQueueWorkItem.status == "queued"
    ).scalar()
    oldest_age = (now - oldest_queued).total_seconds() if oldest_queued else None

    hour_ago = now - timedelta(hours=1)
    recent = db.query(QueueMessage.status, func.count(QueueMessage.id)).filter(
        QueueMessage.finished_at >= hour_ago
    ).group_by(QueueMessage.status).all()
    recent_counts = dict(recent)
    attempts = sum(recent_counts.values())
    failures = recent_counts.get("failed", 0)
    error_rate = round(failures / attempts, 4) if attempts else 0.0

    alerts: List[Alert] = []
    if error_rate > settings.ALERT_ERROR_RATE_THRESHOLD:
        alerts.append(Alert(
            type="high_error_rate",
            message=f"Error rate {error_rate * 100:.2f}% exceeds threshold {settings.ALERT_ERROR_RATE_THRESHOLD * 100:.0f}%",
            severity="critical"
        ))

    if by_status.get("queued"):
        last_finished = db.query(func.max(QueueMessage.finished_at)).scalar()
        stale_cutoff = now - timedelta(minutes=settings.ALERT_QUEUE_STALE_MINUTES)
        last_activity = last_finished or oldest_queued
        if last_activity and last_activity < stale_cutoff:
            alerts.append(Alert(
                type="queue_stale",
                message=f"Queue has not processed items in {settings.ALERT_QUEUE_STALE_MINUTES} minutes",
                severity="critical"
            ))

    if awaiting_review:
        alerts.append(Alert(
            type="manual_review",
            message=f"{awaiting_review} work items need manual review",
            severity="medium"
        ))

    for alert in alerts:
        logger.warning(f"ALERT {alert.type}: {alert.message}")

    return QueueHealth(
        generated_at=now,
        by_status=by_status,
        by_source_type=by_source_type,
        retry_backlog=retry_backlog,
        awaiting_review=awaiting_review,
        retries_exhausted=retries_exhausted,
        oldest_queued_age_seconds=oldest_age,
        attempts_last_hour=attempts,
        failures_last_hour=failures,
        error_rate_last_hour=error_rate,
        alerts=alerts
    )


def rate_limit_status(db: Session, now: Optional[datetime] = None) -> List[RateLimitStatus]:
    """Usage against every window of every bucket; expired windows read as empty."""
    now = now or utcnow()
    statuses = []

    buckets = db.query(RateLimitBucket).order_by(
        RateLimitBucket.source_type, RateLimitBucket.source_key
    ).all()
    for bucket in buckets:
        windows = {}
        for name, _, limit_column in WINDOWS:
            reset_at = getattr(bucket, f"{name}_reset_at")
            expired = reset_at is None or reset_at <= now
            windows[name] = WindowUsage(
                used=0 if expired else getattr(bucket, f"{name}_count"),
                limit=getattr(bucket, limit_column),
                resets_at=None if expired else reset_at
            )

        throttled = throttle_remaining(bucket, now) is not None
        statuses.append(RateLimitStatus(
            source_type=bucket.source_type,
            source_key=bucket.source_key,
            windows=windows,
            is_throttled=throttled,
            throttled_until=bucket.throttled_until if throttled else None,
            total_requests=bucket.total_requests,
            total_failures=bucket.total_failures,
            consecutive_failures=bucket.consecutive_failures,
            last_request_at=bucket.last_request_at
        ))

    return statuses


def schedule_status(db: Session, now: Optional[datetime] = None) -> List[ScheduleStatus]:
    now = now or utcnow()
    statuses = []
    for schedule in db.query(ScrapeSchedule).order_by(ScrapeSchedule.name).all():
        status = ScheduleStatus.model_validate(schedule)
        status.overdue = bool(
            schedule.enabled and schedule.next_run_at and schedule.next_run_at < now - timedelta(seconds=settings.SCHEDULER_TICK_SECONDS * 2)
        )
        statuses.append(status)
    return statuses
