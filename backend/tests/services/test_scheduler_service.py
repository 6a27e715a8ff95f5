# tests/services/test_scheduler_service.py
"""
Tests for ScheduleRunner and the schedule timing helpers

Run with: pytest tests/services/test_scheduler_service.py -v
"""

import pytest
from datetime import datetime, time, timedelta
from types import SimpleNamespace
from unittest.mock import patch

from progeodata.models import ScrapeQueueWorkItem
from progeodata.services.scheduler_service import (
    ScheduleRunner, calculate_next_run, within_window
)
from progeodata.services.work_queue import Outcome, WorkQueue


def schedule_like(**fields):
    base = {
        "cron_expression": None, "frequency_hours": 24.0, "next_run_at": None,
        "start_time": None, "end_time": None, "days_of_week": [],
    }
    base.update(fields)
    return SimpleNamespace(**base)


@pytest.fixture
def queue(db_session, clock):
    return WorkQueue(db_session, clock=clock)


@pytest.fixture
def runner(db_session, clock, queue):
    return ScheduleRunner(db_session, clock=clock, queue=queue)


@pytest.fixture
def seeded(queue):
    queue.seed_targets(["78701", "78702", "78703"], "TX", "google_maps", "plumber")
    queue.seed_targets(["85001"], "AZ", "google_maps", "plumber")
    queue.seed_targets(["78701"], "TX", "yellow_pages", "plumber")
    return queue


# ============================================================================
# TEST: Timing helpers
# ============================================================================

class TestTiming:

    def test_frequency_advances_past_now(self):
        now = datetime(2026, 3, 4, 10, 0)
        schedule = schedule_like(frequency_hours=6, next_run_at=datetime(2026, 3, 3, 9, 0))

        # 09:00 yesterday + 6h steps -> first slot after 10:00 today is 15:00
        assert calculate_next_run(schedule, now) == datetime(2026, 3, 4, 15, 0)

    def test_cron_takes_precedence(self):
        now = datetime(2026, 3, 4, 10, 0)
        schedule = schedule_like(cron_expression="0 2 * * *", frequency_hours=1)

        assert calculate_next_run(schedule, now) == datetime(2026, 3, 5, 2, 0)

    def test_no_window_is_always_open(self):
        assert within_window(schedule_like(), datetime(2026, 3, 4, 3, 0))

    def test_daytime_window(self):
        schedule = schedule_like(start_time=time(9, 0), end_time=time(17, 0))

        assert within_window(schedule, datetime(2026, 3, 4, 9, 0))
        assert within_window(schedule, datetime(2026, 3, 4, 17, 0))
        assert not within_window(schedule, datetime(2026, 3, 4, 8, 59))

    def test_window_wrapping_midnight(self):
        schedule = schedule_like(start_time=time(22, 0), end_time=time(6, 0))

        assert within_window(schedule, datetime(2026, 3, 4, 23, 30))
        assert within_window(schedule, datetime(2026, 3, 5, 2, 0))
        assert not within_window(schedule, datetime(2026, 3, 4, 12, 0))

    def test_days_of_week_are_iso(self):
        # 2026-03-04 is a Wednesday (ISO 3)
        schedule = schedule_like(days_of_week=[1, 2, 3, 4, 5])

        assert within_window(schedule, datetime(2026, 3, 4, 12, 0))
        assert not within_window(schedule, datetime(2026, 3, 7, 12, 0))


# ============================================================================
# TEST: Ticks
# ============================================================================

class TestScheduleTick:

    def test_due_schedule_enqueues_selected_targets(self, runner, seeded, clock, db_session):
        schedule = runner.create_schedule(
            "tx-maps", states=["TX"], source_types=["google_maps"], zip_limit_per_run=2, strategy="all"
        )

        result = runner.run_schedule_tick(schedule)

        assert result.status == "success"
        assert result.selected == 2
        assert result.enqueued == 2
        assert db_session.query(ScrapeQueueWorkItem).filter_by(status="queued").count() == 2
        assert schedule.next_run_at == clock() + timedelta(hours=24)
        assert schedule.total_runs == 1
        assert schedule.last_run_enqueued == 2

    def test_not_due_is_skipped(self, runner, seeded, clock):
        schedule = runner.create_schedule("later", next_run_at=clock() + timedelta(hours=1))

        result = runner.run_schedule_tick(schedule)

        assert result.status == "skipped"
        assert result.reason == "not due"
        assert schedule.total_runs == 0

    def test_disabled_is_skipped(self, runner, seeded):
        schedule = runner.create_schedule("off")
        runner.set_enabled(schedule.id, False)

        assert runner.run_schedule_tick(schedule).reason == "disabled"

    def test_outside_window_is_skipped(self, runner, seeded):
        # Clock is 10:00
        schedule = runner.create_schedule("nightly", start_time=time(22, 0), end_time=time(6, 0))

        result = runner.run_schedule_tick(schedule)

        assert result.reason == "outside window"
        assert result.enqueued == 0

    def test_in_flight_items_are_skipped_not_errors(self, runner, seeded, queue):
        queue.enqueue("78701", "TX", "google_maps", "plumber")
        schedule = runner.create_schedule("all-tx", states=["TX"], strategy="all")

        result = runner.run_schedule_tick(schedule)

        assert result.status == "success"
        # The already-queued item is not eligible for selection at all
        assert result.enqueued == 3
        assert result.skipped == 0

    def test_failed_run_still_advances_next_run(self, runner, seeded, clock):
        schedule = runner.create_schedule("broken")

        with patch.object(runner, "select_targets", side_effect=RuntimeError("db hiccup")):
            result = runner.run_schedule_tick(schedule)

        assert result.status == "failed"
        assert schedule.last_run_status == "failed"
        assert schedule.last_error == "db hiccup"
        assert schedule.next_run_at > clock()

    def test_schedule_priority_overrides_item_priority(self, runner, seeded, db_session):
        schedule = runner.create_schedule("urgent", states=["AZ"], priority=10)

        runner.run_schedule_tick(schedule)

        item = db_session.query(ScrapeQueueWorkItem).filter_by(state="AZ").one()
        assert item.priority == 10

    def test_run_due_schedules_isolates_failures(self, runner, seeded, clock):
        runner.create_schedule("a-first", states=["AZ"])
        runner.create_schedule("b-second", states=["TX"], source_types=["yellow_pages"])

        real_tick = runner.run_schedule_tick

        def flaky(schedule, now=None):
            if schedule.name == "a-first":
                raise RuntimeError("boom")
            return real_tick(schedule, now)

        with patch.object(runner, "run_schedule_tick", side_effect=flaky):
            results = runner.run_due_schedules()

        assert [r.name for r in results] == ["b-second"]
        assert results[0].enqueued == 1


# ============================================================================
# TEST: Selection strategies
# ============================================================================

class TestStrategies:

    def test_priority_strategy(self, runner, queue, clock):
        queue.seed_targets(["00001"], "TX", "google_maps", priority=1)
        queue.seed_targets(["00002"], "TX", "google_maps", priority=9)
        queue.seed_targets(["00003"], "TX", "google_maps", priority=5)
        schedule = runner.create_schedule("p", strategy="priority", zip_limit_per_run=2)

        targets = runner.select_targets(schedule, clock())

        assert [t.zip_code for t in targets] == ["00002", "00003"]

    def test_failed_strategy_only_due_retryable_failures(self, runner, queue, seeded, clock):
        for zip_code in ("78701", "78702"):
            queue.enqueue(zip_code, "TX", "google_maps", "plumber")
            item = queue.claim_next()
            queue.record_result(item.id, item.attempt, Outcome.transient("503"))
        clock.advance(hours=2)
        queue.enqueue("78703", "TX", "google_maps", "plumber")
        item = queue.claim_next()
        queue.record_result(item.id, item.attempt, Outcome.permanent("404"))

        schedule = runner.create_schedule("retry", strategy="failed")
        targets = runner.select_targets(schedule, clock())

        assert sorted(t.zip_code for t in targets) == ["78701", "78702"]

    def test_random_sample_is_reproducible(self, runner, queue, clock):
        queue.seed_targets([f"{n:05d}" for n in range(20)], "TX", "google_maps")
        schedule = runner.create_schedule("sample", strategy="random_sample", zip_limit_per_run=5)

        first = runner.select_targets(schedule, clock())
        second = runner.select_targets(schedule, clock())

        assert len(first) == 5
        assert [t.id for t in first] == [t.id for t in second]

    def test_selector_filters(self, runner, seeded, clock):
        schedule = runner.create_schedule("yp", source_types=["yellow_pages"], professions=["plumber"], strategy="all")

        targets = runner.select_targets(schedule, clock())

        assert [(t.zip_code, t.source_type) for t in targets] == [("78701", "yellow_pages")]


# ============================================================================
# TEST: Freshness re-arm
# ============================================================================

class TestCompletedRearm:

    def complete(self, queue, zip_code):
        queue.enqueue(zip_code, "TX", "google_maps", "plumber")
        item = queue.claim_next()
        queue.record_result(item.id, item.attempt, Outcome.success(1, 1))
        return item

    def test_fresh_completed_items_are_not_selected(self, runner, queue, clock):
        self.complete(queue, "78701")
        schedule = runner.create_schedule("tx", source_types=["google_maps"], strategy="all")

        result = runner.run_schedule_tick(schedule)

        assert result.selected == 0
        assert result.enqueued == 0

    def test_completed_item_is_scheduled_again_once_stale(self, runner, queue, clock, db_session):
        done = self.complete(queue, "78701")
        schedule = runner.create_schedule("tx", source_types=["google_maps"], strategy="all")

        clock.advance(days=30)
        result = runner.run_schedule_tick(schedule)

        assert result.selected == 1
        assert result.enqueued == 1
        assert result.skipped == 0
        item = queue.get_item(done.id)
        assert item.status == "queued"
        assert item.attempt == 1
        assert db_session.query(ScrapeQueueWorkItem).count() == 1
