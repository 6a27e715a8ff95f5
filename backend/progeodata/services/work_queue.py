# backend/progeodata/services/work_queue.py
"""
Work Queue - Scrape work item state machine

    pending -> queued -> processing -> completed
       ^          ^                 \\        |
       |          +----- failed <----+        |
       +------------ (stale) ----------------+

Every edge is a compare-and-set UPDATE on `status` (plus `attempt` for
completion reports), so workers in separate processes can share the table
without locks:

- claim():          queued -> processing, attempt += 1
- record_result():  processing -> completed | failed, only for the current attempt
- enqueue():        pending | failed -> queued, idempotent on the item key
- rearm():          completed -> pending once the completed data has gone stale

Each completion report leaves one immutable QueueMessage.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Iterable
import logging
import random

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from progeodata.config import settings
from progeodata.exceptions import (
    PipelineError, DuplicateWorkItem, InvalidTransition, RetryNotAllowed,
    StaleAttemptError, TransientSourceError, PermanentSourceError, RateLimitExceeded
)
from progeodata.models import ScrapeQueueWorkItem, QueueMessage
from progeodata.utils import Clock, utcnow

logger = logging.getLogger(__name__)


# ============================================================================
# TRANSITION TABLE
# ============================================================================

TRANSITIONS: Dict[str, set] = {
    "pending": {"queued"},
    "queued": {"processing"},
    "processing": {"completed", "failed"},
    "failed": {"queued"},
    # re-armed once the scraped data is older than REQUEUE_COMPLETED_AFTER_DAYS
    "completed": {"pending"},
}

IN_FLIGHT = ("queued", "processing")


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in TRANSITIONS.get(from_status, set())


def check_transition(from_status: str, to_status: str):
    if not can_transition(from_status, to_status):
        raise InvalidTransition(from_status, to_status)


# ============================================================================
# OUTCOMES
# ============================================================================

@dataclass(frozen=True)
class Outcome:
    """Result of one processing attempt, reported by a worker"""
    kind: str  # success, transient, permanent, deferred
    result_count: int = 0
    stored_count: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    retry_after: Optional[float] = None

    @classmethod
    def success(cls, result_count: int = 0, stored_count: int = 0) -> "Outcome":
        return cls("success", result_count=result_count, stored_count=stored_count)

    @classmethod
    def transient(cls, error: str, error_type: str = "TransientSourceError") -> "Outcome":
        return cls("transient", error=error, error_type=error_type)

    @classmethod
    def permanent(cls, error: str, error_type: str = "PermanentSourceError") -> "Outcome":
        return cls("permanent", error=error, error_type=error_type)

    @classmethod
    def deferred(cls, retry_after: Optional[float] = None, error: Optional[str] = None) -> "Outcome":
        return cls("deferred", error=error or "rate limited", error_type="RateLimitExceeded", retry_after=retry_after)

    @classmethod
    def from_exception(cls, exc: Exception) -> "Outcome":
        """Map the source error taxonomy onto outcomes."""
        if isinstance(exc, RateLimitExceeded):
            return cls.deferred(exc.retry_after, str(exc))
        if isinstance(exc, PermanentSourceError):
            return cls.permanent(str(exc))
        if isinstance(exc, TransientSourceError):
            return cls.transient(str(exc))
        return cls.transient(str(exc) or exc.__class__.__name__, error_type=exc.__class__.__name__)

    @property
    def target_status(self) -> str:
        return "completed" if self.kind == "success" else "failed"

    @property
    def message_status(self) -> str:
        if self.kind == "success":
            return "completed"
        if self.kind == "deferred":
            return "deferred"
        return "failed"


class WorkQueue:
    """
    Durable, retryable work queue over ScrapeQueueWorkItem rows.
    """

    def __init__(
        self,
        db: Session,
        clock: Clock = utcnow,
        rng: Optional[random.Random] = None,
        max_retries: Optional[int] = None
    ):
        self.db = db
        self.clock = clock
        self.rng = rng or random.Random()
        self.max_retries = max_retries if max_retries is not None else settings.QUEUE_MAX_RETRIES

    # ========================================================================
    # LOOKUP
    # ========================================================================

    def get_item(self, item_id) -> Optional[ScrapeQueueWorkItem]:
        return self.db.query(ScrapeQueueWorkItem).filter(
            ScrapeQueueWorkItem.id == item_id
        ).populate_existing().first()

    def find(self, zip_code: str, state: str, source_type: str, profession: str = "general") -> Optional[ScrapeQueueWorkItem]:
        return self.db.query(ScrapeQueueWorkItem).filter(
            ScrapeQueueWorkItem.zip_code == zip_code,
            ScrapeQueueWorkItem.state == state,
            ScrapeQueueWorkItem.source_type == source_type,
            ScrapeQueueWorkItem.profession == profession
        ).populate_existing().first()

    def messages_for(self, item_id) -> List[QueueMessage]:
        return self.db.query(QueueMessage).filter(
            QueueMessage.work_item_id == item_id
        ).order_by(QueueMessage.attempt, QueueMessage.finished_at).all()

    # ========================================================================
    # CAS CORE
    # ========================================================================

    def _cas(self, item: ScrapeQueueWorkItem, to_status: str, values: Dict, *conditions) -> bool:
        """
        Apply item.status -> to_status iff the row still has the status (and
        any extra conditions) we read. Does not commit.
        """
        check_transition(item.status, to_status)

        result = self.db.execute(
            update(ScrapeQueueWorkItem)
            .execution_options(synchronize_session=False)
            .where(
                ScrapeQueueWorkItem.id == item.id,
                ScrapeQueueWorkItem.status == item.status,
                *conditions
            )
            .values(status=to_status, updated_at=self.clock(), **values)
        )
        return result.rowcount == 1

    # ========================================================================
    # SEEDING / ENQUEUE
    # ========================================================================

    def seed_targets(
        self,
        zip_codes: Iterable[str],
        state: str,
        source_type: str,
        profession: str = "general",
        priority: Optional[int] = None
    ) -> int:
        """
        Create `pending` items for new keys. Existing items are left alone,
        except completed ones whose data has gone stale, which are re-armed.
        """
        created = 0
        for zip_code in zip_codes:
            existing = self.find(zip_code, state, source_type, profession)
            if existing is not None:
                if existing.status == "completed" and self.rearm(existing):
                    created += 1
                continue
            if self._create_pending(zip_code, state, source_type, profession, priority) is not None:
                created += 1

        logger.info(f"🌱 Seeded {created} {source_type} targets for {state}/{profession}")
        return created

    def _create_pending(
        self,
        zip_code: str,
        state: str,
        source_type: str,
        profession: str,
        priority: Optional[int]
    ) -> Optional[ScrapeQueueWorkItem]:
        now = self.clock()
        item = ScrapeQueueWorkItem(
            zip_code=zip_code,
            state=state,
            source_type=source_type,
            profession=profession,
            status="pending",
            priority=priority if priority is not None else settings.DEFAULT_PRIORITY,
            created_at=now,
            updated_at=now
        )
        self.db.add(item)
        try:
            self.db.commit()
            return item
        except IntegrityError:
            # Same key created concurrently
            self.db.rollback()
            return None

    def stale_completed_cutoff(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Items completed at or before this moment may be scraped again."""
        if settings.REQUEUE_COMPLETED_AFTER_DAYS is None:
            return None
        return (now or self.clock()) - timedelta(days=settings.REQUEUE_COMPLETED_AFTER_DAYS)

    def rearm(self, item: ScrapeQueueWorkItem, now: Optional[datetime] = None) -> bool:
        """completed -> pending when the item was completed before the freshness cutoff."""
        cutoff = self.stale_completed_cutoff(now)
        if cutoff is None or item.status != "completed":
            return False
        if item.completed_at is None or item.completed_at > cutoff:
            return False

        if not self._cas(item, "pending", {"next_retry_at": None}, ScrapeQueueWorkItem.completed_at <= cutoff):
            self.db.rollback()
            return False

        self.db.commit()
        logger.info(f"♻️ Re-armed {item.state}/{item.zip_code} {item.source_type} (completed {item.completed_at})")
        return True

    def is_retryable(self, item: ScrapeQueueWorkItem, now: Optional[datetime] = None) -> bool:
        return self._retry_block_reason(item, now or self.clock()) is None

    def _retry_block_reason(self, item: ScrapeQueueWorkItem, now: datetime) -> Optional[str]:
        if item.status != "failed":
            return f"status is {item.status}"
        if item.needs_review:
            return "flagged for manual review"
        if item.consecutive_failures >= self.max_retries:
            return f"retries exhausted ({item.consecutive_failures}/{self.max_retries})"
        if item.next_retry_at and item.next_retry_at > now:
            return f"next retry at {item.next_retry_at.isoformat()}"
        return None

    def enqueue(
        self,
        zip_code: str,
        state: str,
        source_type: str,
        profession: str = "general",
        priority: Optional[int] = None
    ) -> ScrapeQueueWorkItem:
        """
        Put the item for this key into `queued`, creating it if needed.

        A completed item is re-armed first when its data has gone stale.
        Raises DuplicateWorkItem when the item is already queued, processing
        or freshly completed (benign), RetryNotAllowed for failed items that may not
        be retried yet.
        """
        item = self.find(zip_code, state, source_type, profession)
        if item is None:
            self._create_pending(zip_code, state, source_type, profession, priority)
            item = self.find(zip_code, state, source_type, profession)

        return self._queue(item, priority)

    def _queue(self, item: ScrapeQueueWorkItem, priority: Optional[int] = None) -> ScrapeQueueWorkItem:
        now = self.clock()

        if item.status == "completed":
            if not self.rearm(item, now):
                raise DuplicateWorkItem(item.id, item.status)
            item = self.get_item(item.id)

        if item.status in IN_FLIGHT:
            raise DuplicateWorkItem(item.id, item.status)

        conditions = []
        if item.status == "failed":
            reason = self._retry_block_reason(item, now)
            if reason:
                raise RetryNotAllowed(item.id, reason)
            conditions = [
                ScrapeQueueWorkItem.needs_review.is_(False),
                ScrapeQueueWorkItem.consecutive_failures < self.max_retries,
            ]

        from_status = item.status
        values = {
            "queued_at": now,
            "next_retry_at": None,
            "priority": priority if priority is not None else item.priority,
        }
        if not self._cas(item, "queued", values, *conditions):
            self.db.rollback()
            current = self.get_item(item.id)
            logger.debug(f"Lost enqueue race for {current}")
            raise DuplicateWorkItem(current.id, current.status)

        self.db.commit()
        item = self.get_item(item.id)
        logger.info(f"📥 Queued {item.state}/{item.zip_code} {item.source_type} ({from_status} -> queued, priority {item.priority})")
        return item

    # ========================================================================
    # CLAIM
    # ========================================================================

    def claim(self, item_id, expected_attempt: int, worker_id: Optional[str] = None) -> Optional[ScrapeQueueWorkItem]:
        """
        Atomic queued -> processing. Returns the claimed item, or None when
        another worker got there first.
        """
        now = self.clock()
        result = self.db.execute(
            update(ScrapeQueueWorkItem)
            .execution_options(synchronize_session=False)
            .where(
                ScrapeQueueWorkItem.id == item_id,
                ScrapeQueueWorkItem.status == "queued",
                ScrapeQueueWorkItem.attempt == expected_attempt
            )
            .values(
                status="processing",
                attempt=expected_attempt + 1,
                claimed_at=now,
                claimed_by=worker_id,
                last_attempted_at=now,
                total_attempts=ScrapeQueueWorkItem.total_attempts + 1,
                updated_at=now
            )
        )
        if result.rowcount != 1:
            self.db.rollback()
            return None

        self.db.commit()
        item = self.get_item(item_id)
        logger.info(f"🔒 {worker_id or 'worker'} claimed {item.state}/{item.zip_code} {item.source_type} attempt {item.attempt}")
        return item

    def claim_next(self, source_type: Optional[str] = None, worker_id: Optional[str] = None) -> Optional[ScrapeQueueWorkItem]:
        """Claim the highest-priority, oldest queued item."""
        query = self.db.query(ScrapeQueueWorkItem).filter(ScrapeQueueWorkItem.status == "queued")
        if source_type:
            query = query.filter(ScrapeQueueWorkItem.source_type == source_type)

        candidates = query.order_by(
            ScrapeQueueWorkItem.priority.desc(),
            ScrapeQueueWorkItem.queued_at.asc()
        ).limit(settings.CLAIM_BATCH_SIZE).populate_existing().all()

        for candidate in candidates:
            item = self.claim(candidate.id, candidate.attempt, worker_id)
            if item is not None:
                return item

        return None

    # ========================================================================
    # RESULTS
    # ========================================================================

    def backoff_delay(self, previous_failures: int) -> timedelta:
        """base * 2^failures, capped, with +/- jitter."""
        exponent = min(previous_failures, settings.RETRY_MAX_EXPONENT)
        delay = settings.RETRY_BASE_SECONDS * (2 ** exponent)
        jitter = delay * settings.RETRY_JITTER_RATIO * self.rng.uniform(-1, 1)
        return timedelta(seconds=delay + jitter)

    def record_result(
        self,
        item_id,
        attempt: int,
        outcome: Outcome,
        started_at: Optional[datetime] = None
    ) -> ScrapeQueueWorkItem:
        """
        Apply a completion report for `attempt`.

        Raises StaleAttemptError if the item is no longer processing that
        attempt (straggler from a reaped or retried claim).
        """
        item = self.get_item(item_id)
        if item is None:
            raise ValueError(f"Work item {item_id} not found")
        if item.status != "processing" or item.attempt != attempt:
            logger.warning(f"Rejected stale report for {item_id} attempt {attempt} (item at {item.status}/{item.attempt})")
            raise StaleAttemptError(item_id, attempt)

        now = self.clock()
        values = self._result_values(item, outcome, now)

        if not self._cas(item, outcome.target_status, values, ScrapeQueueWorkItem.attempt == attempt):
            self.db.rollback()
            logger.warning(f"Rejected stale report for {item_id} attempt {attempt}")
            raise StaleAttemptError(item_id, attempt)

        self.db.add(self._message(item, attempt, outcome, started_at, now))
        self.db.commit()

        item = self.get_item(item_id)
        if outcome.kind == "success":
            logger.info(f"✅ {item.state}/{item.zip_code} {item.source_type}: {outcome.result_count} found, {outcome.stored_count} stored")
        elif outcome.kind == "deferred":
            logger.info(f"⏸️ {item.state}/{item.zip_code} {item.source_type} deferred until {item.next_retry_at}")
        elif outcome.kind == "permanent":
            logger.error(f"❌ {item.state}/{item.zip_code} {item.source_type} failed permanently, needs review: {outcome.error}")
        else:
            logger.warning(
                f"⚠️ {item.state}/{item.zip_code} {item.source_type} failed "
                f"({item.consecutive_failures}/{self.max_retries}): {outcome.error}"
            )
        return item

    def _result_values(self, item: ScrapeQueueWorkItem, outcome: Outcome, now: datetime) -> Dict:
        values = {"claimed_at": None}

        if outcome.kind == "success":
            values.update(
                completed_at=now,
                consecutive_failures=0,
                successful_scrapes=ScrapeQueueWorkItem.successful_scrapes + 1,
                last_result_count=outcome.result_count,
                total_records_found=ScrapeQueueWorkItem.total_records_found + outcome.result_count,
                next_retry_at=None,
                last_error=None,
                last_error_type=None,
            )
        elif outcome.kind == "deferred":
            # Not a failure: consecutive_failures is left alone
            wait = outcome.retry_after if outcome.retry_after is not None else settings.RATE_LIMIT_ERROR_COOLDOWN_SECONDS
            values.update(
                next_retry_at=now + timedelta(seconds=wait),
                last_error=outcome.error,
                last_error_type=outcome.error_type,
            )
        elif outcome.kind == "permanent":
            values.update(
                consecutive_failures=ScrapeQueueWorkItem.consecutive_failures + 1,
                failed_scrapes=ScrapeQueueWorkItem.failed_scrapes + 1,
                needs_review=True,
                next_retry_at=None,
                last_error=outcome.error,
                last_error_type=outcome.error_type,
            )
        else:
            values.update(
                consecutive_failures=ScrapeQueueWorkItem.consecutive_failures + 1,
                failed_scrapes=ScrapeQueueWorkItem.failed_scrapes + 1,
                next_retry_at=now + self.backoff_delay(item.consecutive_failures),
                last_error=outcome.error,
                last_error_type=outcome.error_type,
            )
        return values

    def _message(
        self,
        item: ScrapeQueueWorkItem,
        attempt: int,
        outcome: Outcome,
        started_at: Optional[datetime],
        finished_at: datetime
    ) -> QueueMessage:
        previous = self.db.query(QueueMessage).filter(
            QueueMessage.work_item_id == item.id
        ).order_by(QueueMessage.attempt.desc()).first()

        started = started_at or item.claimed_at
        return QueueMessage(
            work_item_id=item.id,
            attempt=attempt,
            retry_of_id=previous.id if previous else None,
            worker_id=item.claimed_by,
            source_type=item.source_type,
            zip_code=item.zip_code,
            state=item.state,
            status=outcome.message_status,
            result_count=outcome.result_count,
            stored_count=outcome.stored_count,
            error_type=outcome.error_type,
            error_message=outcome.error,
            started_at=started,
            finished_at=finished_at,
            duration_ms=int((finished_at - started).total_seconds() * 1000) if started else None
        )

    # ========================================================================
    # HOUSEKEEPING
    # ========================================================================

    def requeue_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> int:
        """failed -> queued for every retryable item whose backoff has elapsed."""
        now = now or self.clock()
        query = self.db.query(ScrapeQueueWorkItem).filter(
            ScrapeQueueWorkItem.status == "failed",
            ScrapeQueueWorkItem.needs_review.is_(False),
            ScrapeQueueWorkItem.consecutive_failures < self.max_retries,
            (ScrapeQueueWorkItem.next_retry_at.is_(None)) | (ScrapeQueueWorkItem.next_retry_at <= now)
        ).order_by(ScrapeQueueWorkItem.priority.desc(), ScrapeQueueWorkItem.next_retry_at.asc())
        if limit:
            query = query.limit(limit)

        requeued = 0
        for item in query.all():
            try:
                self._queue(item)
                requeued += 1
            except PipelineError as e:
                logger.debug(f"Skipped requeue of {item.id}: {e}")

        if requeued:
            logger.info(f"🔄 Requeued {requeued} failed items")
        return requeued

    def release_for_retry(self, item_id, priority: Optional[int] = None) -> ScrapeQueueWorkItem:
        """Manual triage: clear review flag and failure streak, then requeue."""
        item = self.get_item(item_id)
        if item is None:
            raise ValueError(f"Work item {item_id} not found")
        if item.status != "failed":
            raise InvalidTransition(item.status, "queued")

        self.db.execute(
            update(ScrapeQueueWorkItem)
            .execution_options(synchronize_session=False)
            .where(ScrapeQueueWorkItem.id == item.id, ScrapeQueueWorkItem.status == "failed")
            .values(needs_review=False, consecutive_failures=0, next_retry_at=None, updated_at=self.clock())
        )
        self.db.commit()
        logger.info(f"Released {item.id} from manual review")

        return self._queue(self.get_item(item_id), priority)

    def reap_stale_claims(self, now: Optional[datetime] = None) -> int:
        """Fail items whose worker stopped reporting; their late reports become stale."""
        now = now or self.clock()
        cutoff = now - timedelta(seconds=settings.STALE_CLAIM_SECONDS)

        stale = self.db.query(ScrapeQueueWorkItem).filter(
            ScrapeQueueWorkItem.status == "processing",
            ScrapeQueueWorkItem.claimed_at < cutoff
        ).all()

        reaped = 0
        for item in stale:
            try:
                self.record_result(
                    item.id,
                    item.attempt,
                    Outcome.transient(
                        f"claim by {item.claimed_by} expired after {settings.STALE_CLAIM_SECONDS}s",
                        error_type="StaleClaim"
                    )
                )
                reaped += 1
            except StaleAttemptError:
                # Worker reported in the meantime
                continue

        if reaped:
            logger.warning(f"🧹 Reaped {reaped} stale claims")
        return reaped
