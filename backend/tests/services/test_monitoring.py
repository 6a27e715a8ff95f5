# tests/services/test_monitoring.py
"""
Tests for the read-only monitoring views

Run with: pytest tests/services/test_monitoring.py -v
"""

import pytest
from datetime import timedelta

from progeodata.models import RateLimitBucket
from progeodata.services import monitoring
from progeodata.services.rate_limiter import RateLimiter
from progeodata.services.scheduler_service import ScheduleRunner
from progeodata.services.work_queue import Outcome, WorkQueue


@pytest.fixture
def queue(db_session, clock):
    return WorkQueue(db_session, clock=clock)


def run_once(queue, zip_code, outcome):
    queue.enqueue(zip_code, "TX", "google_maps", "plumber")
    item = queue.claim_next()
    return queue.record_result(item.id, item.attempt, outcome)


# ============================================================================
# TEST: Queue health
# ============================================================================

class TestQueueHealth:

    def test_empty_queue(self, db_session, clock):
        health = monitoring.queue_health(db_session, now=clock())

        assert health.by_status == {"pending": 0, "queued": 0, "processing": 0, "completed": 0, "failed": 0}
        assert health.oldest_queued_age_seconds is None
        assert health.error_rate_last_hour == 0.0
        assert health.alerts == []

    def test_counts_by_status_and_source(self, db_session, clock, queue):
        queue.seed_targets(["78701", "78702"], "TX", "google_maps", "plumber")
        queue.enqueue("78701", "TX", "google_maps", "plumber")
        queue.enqueue("78701", "TX", "yellow_pages", "plumber")

        health = monitoring.queue_health(db_session, now=clock())

        assert health.by_status["pending"] == 1
        assert health.by_status["queued"] == 2
        assert health.by_source_type == {
            "google_maps": {"pending": 1, "queued": 1},
            "yellow_pages": {"queued": 1},
        }

    def test_high_error_rate_alert(self, db_session, clock, queue):
        run_once(queue, "78701", Outcome.transient("503"))
        run_once(queue, "78702", Outcome.transient("503"))
        run_once(queue, "78703", Outcome.success(result_count=4, stored_count=4))

        health = monitoring.queue_health(db_session, now=clock())

        assert health.attempts_last_hour == 3
        assert health.failures_last_hour == 2
        assert health.error_rate_last_hour == pytest.approx(0.6667)
        assert health.retry_backlog == 2
        assert [a.type for a in health.alerts] == ["high_error_rate"]

    def test_old_attempts_fall_out_of_the_window(self, db_session, clock, queue):
        run_once(queue, "78701", Outcome.transient("503"))
        clock.advance(hours=2)

        health = monitoring.queue_health(db_session, now=clock())

        assert health.attempts_last_hour == 0
        assert health.error_rate_last_hour == 0.0

    def test_stale_queue_alert(self, db_session, clock, queue):
        queue.enqueue("78701", "TX", "google_maps", "plumber")
        clock.advance(minutes=31)

        health = monitoring.queue_health(db_session, now=clock())

        assert health.oldest_queued_age_seconds == 31 * 60
        assert "queue_stale" in [a.type for a in health.alerts]

    def test_recent_activity_keeps_queue_fresh(self, db_session, clock, queue):
        queue.enqueue("78701", "TX", "google_maps", "plumber")
        clock.advance(minutes=31)
        run_once(queue, "78702", Outcome.success())

        health = monitoring.queue_health(db_session, now=clock())

        assert "queue_stale" not in [a.type for a in health.alerts]

    def test_manual_review_alert(self, db_session, clock, queue):
        run_once(queue, "78701", Outcome.permanent("404 unknown zip"))

        health = monitoring.queue_health(db_session, now=clock())

        assert health.awaiting_review == 1
        assert health.retry_backlog == 0
        assert "manual_review" in [a.type for a in health.alerts]


# ============================================================================
# TEST: Rate limits
# ============================================================================

class TestRateLimitStatus:

    def test_window_usage(self, db_session, clock):
        RateLimiter(db_session, clock=clock).try_acquire("google_maps", "TX")

        status = monitoring.rate_limit_status(db_session, now=clock())

        assert len(status) == 1
        assert status[0].source_type == "google_maps"
        assert status[0].windows["minute"].used == 1
        assert status[0].windows["minute"].limit == 60
        assert status[0].windows["minute"].resets_at == clock() + timedelta(minutes=1)
        assert status[0].total_requests == 1

    def test_expired_windows_read_as_empty(self, db_session, clock):
        RateLimiter(db_session, clock=clock).try_acquire("google_maps", "TX")
        clock.advance(seconds=61)

        windows = monitoring.rate_limit_status(db_session, now=clock())[0].windows

        assert windows["second"].used == 0
        assert windows["minute"].used == 0
        assert windows["minute"].resets_at is None
        assert windows["hour"].used == 1

    def test_throttle_is_reported_until_it_expires(self, db_session, clock):
        RateLimiter(db_session, clock=clock).on_failure("google_maps", "TX", error="429", throttle=True, retry_after=30)

        assert monitoring.rate_limit_status(db_session, now=clock())[0].is_throttled is True

        clock.advance(seconds=31)
        status = monitoring.rate_limit_status(db_session, now=clock())[0]
        assert status.is_throttled is False
        assert status.throttled_until is None

    def test_indefinite_throttle_is_reported(self, db_session, clock):
        RateLimiter(db_session, clock=clock).get_or_create_bucket("google_maps", "TX")
        db_session.query(RateLimitBucket).update({"is_throttled": True, "throttled_until": None})
        db_session.commit()

        clock.advance(days=1)
        status = monitoring.rate_limit_status(db_session, now=clock())[0]

        assert status.is_throttled is True
        assert status.throttled_until is None


# ============================================================================
# TEST: Schedules
# ============================================================================

class TestScheduleStatus:

    def test_overdue_flag(self, db_session, clock):
        runner = ScheduleRunner(db_session, clock=clock)
        runner.create_schedule("late", next_run_at=clock() - timedelta(minutes=10))
        runner.create_schedule("on-time", next_run_at=clock() + timedelta(hours=1))
        off = runner.create_schedule("off", next_run_at=clock() - timedelta(days=1))
        runner.set_enabled(off.id, False)

        statuses = {s.name: s for s in monitoring.schedule_status(db_session, now=clock())}

        assert statuses["late"].overdue is True
        assert statuses["on-time"].overdue is False
        assert statuses["off"].overdue is False
        assert [s.name for s in monitoring.schedule_status(db_session, now=clock())] == ["late", "off", "on-time"]
