# backend/progeodata/services/rate_limiter.py
"""
Per-Source Rate Limiter

Gates every external fetch against a RateLimitBucket row:
- Four independent windows (second / minute / hour / day), AND semantics
- Lazy window reset when reset_at has passed
- Explicit throttle override (upstream 429, error cooldown) beats window math
- Compare-and-set on the bucket `version` so concurrent workers in separate
  processes never over- or under-count

Denial is not an error. Callers wait (wait_for_slot) or defer the work.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Callable, Awaitable
import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from progeodata.config import settings
from progeodata.exceptions import RateLimitExceeded
from progeodata.models import RateLimitBucket
from progeodata.utils import utcnow

logger = logging.getLogger(__name__)


# (window name, length in seconds, limit column)
WINDOWS = (
    ("second", 1, "requests_per_second"),
    ("minute", 60, "requests_per_minute"),
    ("hour", 3600, "requests_per_hour"),
    ("day", 86400, "requests_per_day"),
)


def throttle_remaining(bucket: RateLimitBucket, now: datetime) -> Optional[float]:
    """
    Seconds left on the throttle override, or None when the bucket is free.

    A future throttled_until blocks on its own. is_throttled without an
    expiry is an indefinite throttle and reports the error cooldown.
    """
    if bucket.throttled_until is not None and bucket.throttled_until > now:
        return (bucket.throttled_until - now).total_seconds()
    if bucket.is_throttled and bucket.throttled_until is None:
        return float(settings.RATE_LIMIT_ERROR_COOLDOWN_SECONDS)
    return None


@dataclass
class RateLimitDecision:
    """Result of one acquire attempt"""
    allowed: bool
    retry_after: float = 0.0  # seconds
    reason: Optional[str] = None


class RateLimiter:
    """
    Database-backed multi-window limiter keyed by (source_type, source_key).

    source_key is usually the state, so each licensing board / maps region
    gets its own budget.
    """

    # Source-specific defaults for buckets created on first use
    SOURCE_CONFIGS = {
        "google_maps": {
            "requests_per_second": 2,
            "requests_per_minute": 60,
            "requests_per_hour": 1000,
            "requests_per_day": 10000,
        },
        "yellow_pages": {
            "requests_per_second": 1,
            "requests_per_minute": 30,
            "requests_per_hour": 500,
            "requests_per_day": 5000,
        },
        "facebook": {
            "requests_per_second": 1,
            "requests_per_minute": 20,
            "requests_per_hour": 200,
            "requests_per_day": 2000,
        },
        # State licensing boards: 1 req/sec per state
        "licensing_board": {
            "requests_per_second": 1,
            "requests_per_minute": 60,
            "requests_per_hour": 3600,
            "requests_per_day": None,
        },
    }

    MAX_CAS_RETRIES = 10
    MIN_WAIT_SECONDS = 0.05

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.db = db
        self.clock = clock
        self.sleep = sleep

    # ========================================================================
    # BUCKETS
    # ========================================================================

    def default_limits(self, source_type: str) -> Dict[str, Optional[int]]:
        return self.SOURCE_CONFIGS.get(source_type, {
            "requests_per_second": settings.DEFAULT_REQUESTS_PER_SECOND,
            "requests_per_minute": settings.DEFAULT_REQUESTS_PER_MINUTE,
            "requests_per_hour": settings.DEFAULT_REQUESTS_PER_HOUR,
            "requests_per_day": settings.DEFAULT_REQUESTS_PER_DAY,
        })

    def get_or_create_bucket(self, source_type: str, source_key: str) -> RateLimitBucket:
        bucket = self._load(source_type, source_key)
        if bucket:
            return bucket

        bucket = RateLimitBucket(
            source_type=source_type,
            source_key=source_key,
            **self.default_limits(source_type)
        )
        self.db.add(bucket)
        try:
            self.db.commit()
            logger.info(f"Created rate limit bucket {source_type}:{source_key}")
        except IntegrityError:
            # Another worker created it first
            self.db.rollback()
            bucket = self._load(source_type, source_key)
        return bucket

    def configure(
        self,
        source_type: str,
        source_key: str,
        requests_per_second: Optional[int] = None,
        requests_per_minute: Optional[int] = None,
        requests_per_hour: Optional[int] = None,
        requests_per_day: Optional[int] = None
    ) -> RateLimitBucket:
        """Set the four window limits (None = unbounded)."""
        bucket = self.get_or_create_bucket(source_type, source_key)
        self.db.execute(
            update(RateLimitBucket)
            .execution_options(synchronize_session=False)
            .where(RateLimitBucket.id == bucket.id)
            .values(
                requests_per_second=requests_per_second,
                requests_per_minute=requests_per_minute,
                requests_per_hour=requests_per_hour,
                requests_per_day=requests_per_day,
                version=RateLimitBucket.version + 1
            )
        )
        self.db.commit()
        return self._load(source_type, source_key)

    def _load(self, source_type: str, source_key: str) -> Optional[RateLimitBucket]:
        return self.db.query(RateLimitBucket).filter(
            RateLimitBucket.source_type == source_type,
            RateLimitBucket.source_key == source_key
        ).populate_existing().first()

    # ========================================================================
    # ACQUIRE
    # ========================================================================

    def try_acquire(self, source_type: str, source_key: str) -> RateLimitDecision:
        """
        Take one request slot if every window allows it.

        Returns a denial with retry_after instead of raising.
        """
        for _ in range(self.MAX_CAS_RETRIES):
            bucket = self.get_or_create_bucket(source_type, source_key)
            now = self.clock()
            values, decision = self._evaluate(bucket, now)

            if not values:
                return decision

            result = self.db.execute(
                update(RateLimitBucket)
                .execution_options(synchronize_session=False)
                .where(
                    RateLimitBucket.id == bucket.id,
                    RateLimitBucket.version == bucket.version
                )
                .values(version=bucket.version + 1, **values)
            )
            if result.rowcount == 1:
                self.db.commit()
                if not decision.allowed:
                    logger.debug(
                        f"Rate limit {source_type}:{source_key} denied "
                        f"({decision.reason}), retry in {decision.retry_after:.2f}s"
                    )
                return decision

            # Lost the race, re-read and re-evaluate
            self.db.rollback()

        logger.warning(f"Rate limit bucket {source_type}:{source_key} is contended, backing off")
        return RateLimitDecision(allowed=False, retry_after=self.MIN_WAIT_SECONDS, reason="contended")

    def _evaluate(self, bucket: RateLimitBucket, now: datetime):
        """Compute column updates and the decision for one acquire attempt."""
        values = {}

        # Throttle override wins over window math
        wait = throttle_remaining(bucket, now)
        if wait is not None:
            return {}, RateLimitDecision(allowed=False, retry_after=wait, reason="throttled")
        if bucket.is_throttled or bucket.throttled_until is not None:
            values["is_throttled"] = False
            values["throttled_until"] = None
            logger.info(f"Throttle lifted for {bucket.source_type}:{bucket.source_key}")

        # Lazy reset of expired windows
        windows = {}
        for name, _, _ in WINDOWS:
            count = getattr(bucket, f"{name}_count") or 0
            reset_at = getattr(bucket, f"{name}_reset_at")
            if reset_at is not None and reset_at <= now:
                count, reset_at = 0, None
                values[f"{name}_count"] = 0
                values[f"{name}_reset_at"] = None
            windows[name] = (count, reset_at)

        # Tightest window wins
        blocked = []
        for name, seconds, limit_column in WINDOWS:
            limit = getattr(bucket, limit_column)
            count, reset_at = windows[name]
            if limit is not None and count >= limit:
                resets = reset_at or now + timedelta(seconds=seconds)
                blocked.append((name, (resets - now).total_seconds()))

        if blocked:
            name, wait = max(blocked, key=lambda b: b[1])
            return values, RateLimitDecision(allowed=False, retry_after=wait, reason=f"{name}_window")

        for name, seconds, _ in WINDOWS:
            count, reset_at = windows[name]
            values[f"{name}_count"] = count + 1
            values[f"{name}_reset_at"] = reset_at or now + timedelta(seconds=seconds)
        values["total_requests"] = (bucket.total_requests or 0) + 1
        values["last_request_at"] = now

        return values, RateLimitDecision(allowed=True)

    async def wait_for_slot(
        self,
        source_type: str,
        source_key: str,
        max_wait: Optional[float] = None
    ) -> float:
        """
        Block (asynchronously) until a slot is acquired.

        Holds no transaction while sleeping. Returns seconds waited; raises
        RateLimitExceeded only when max_wait would be exceeded.
        """
        if max_wait is None:
            max_wait = settings.RATE_LIMIT_MAX_WAIT_SECONDS

        waited = 0.0
        while True:
            decision = self.try_acquire(source_type, source_key)
            if decision.allowed:
                return waited

            delay = max(decision.retry_after, self.MIN_WAIT_SECONDS)
            if max_wait is not None and waited + delay > max_wait:
                raise RateLimitExceeded(
                    f"{source_type}:{source_key} not available within {max_wait}s",
                    retry_after=decision.retry_after
                )

            logger.info(
                f"⏳ Rate limit {source_type}:{source_key} ({decision.reason}): "
                f"waiting {delay:.2f}s"
            )
            await self.sleep(delay)
            waited += delay

    # ========================================================================
    # OUTCOMES
    # ========================================================================

    def on_success(self, source_type: str, source_key: str):
        """Mark last request as successful (reset error counter)"""
        bucket = self.get_or_create_bucket(source_type, source_key)
        self.db.execute(
            update(RateLimitBucket)
            .execution_options(synchronize_session=False)
            .where(RateLimitBucket.id == bucket.id)
            .values(
                total_successes=RateLimitBucket.total_successes + 1,
                consecutive_failures=0,
                version=RateLimitBucket.version + 1
            )
        )
        self.db.commit()

    def on_failure(
        self,
        source_type: str,
        source_key: str,
        error: Optional[str] = None,
        throttle: bool = False,
        retry_after: Optional[float] = None
    ):
        """
        Record a failed request.

        throttle=True (upstream 429) blocks the bucket for retry_after
        seconds. Repeated consecutive errors force a cooldown as well.
        """
        bucket = self.get_or_create_bucket(source_type, source_key)
        now = self.clock()
        values = {
            "total_failures": RateLimitBucket.total_failures + 1,
            "consecutive_failures": RateLimitBucket.consecutive_failures + 1,
            "last_error": error,
            "version": RateLimitBucket.version + 1,
        }
        if throttle:
            cooldown = retry_after or settings.RATE_LIMIT_ERROR_COOLDOWN_SECONDS
            values["is_throttled"] = True
            values["throttled_until"] = now + timedelta(seconds=cooldown)
            logger.warning(f"🛑 {source_type}:{source_key} throttled for {cooldown:.0f}s")

        self.db.execute(
            update(RateLimitBucket)
            .execution_options(synchronize_session=False)
            .where(RateLimitBucket.id == bucket.id)
            .values(**values)
        )
        self.db.commit()

        bucket = self._load(source_type, source_key)
        if not throttle and bucket.consecutive_failures >= settings.RATE_LIMIT_ERRORS_BEFORE_COOLDOWN:
            self._trigger_cooldown(bucket, now)

    def _trigger_cooldown(self, bucket: RateLimitBucket, now: datetime):
        """Force a cooldown after too many consecutive errors"""
        until = now + timedelta(seconds=settings.RATE_LIMIT_ERROR_COOLDOWN_SECONDS)
        self.db.execute(
            update(RateLimitBucket)
            .execution_options(synchronize_session=False)
            .where(RateLimitBucket.id == bucket.id)
            .values(is_throttled=True, throttled_until=until, version=RateLimitBucket.version + 1)
        )
        self.db.commit()
        logger.error(
            f"🚨 {bucket.source_type}:{bucket.source_key}: "
            f"{bucket.consecutive_failures} consecutive errors, cooling down until {until.isoformat()}"
        )
