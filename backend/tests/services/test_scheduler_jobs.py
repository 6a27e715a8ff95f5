# tests/services/test_scheduler_jobs.py
"""
Tests for the APScheduler jobs and the standalone worker entry point

Run with: pytest tests/services/test_scheduler_jobs.py -v
"""

import pytest
from datetime import timedelta
from unittest.mock import patch

from progeodata import scheduler as scheduler_module
from progeodata import worker_main
from progeodata.config import settings
from progeodata.models import GhostProfile, ScrapeQueueWorkItem
from progeodata.schemas.business import FetchResult
from progeodata.services.scheduler_service import ScheduleRunner
from progeodata.services.work_queue import Outcome, WorkQueue
from progeodata.sources.base import SourceAdapter
from progeodata.utils import utcnow


class EmptySource(SourceAdapter):

    def __init__(self):
        super().__init__({})
        self.targets = []

    async def fetch(self, target):
        self.targets.append(target)
        return FetchResult(records=[])


@pytest.fixture
def patched_sessions(session_factory):
    with patch("progeodata.database.SessionLocal", session_factory):
        yield session_factory


@pytest.fixture
def registered_source():
    source = EmptySource()
    scheduler_module._registered_sources.clear()
    scheduler_module._registered_sources["google_maps"] = source
    yield source
    scheduler_module._registered_sources.clear()


def statuses(db_session):
    return {
        item.zip_code: item
        for item in db_session.query(ScrapeQueueWorkItem).populate_existing().all()
    }


# ============================================================================
# TEST: Schedule tick job
# ============================================================================

class TestScheduleTickJob:

    @pytest.mark.asyncio
    async def test_tick_enqueues_and_dispatches(self, patched_sessions, registered_source, db_session):
        WorkQueue(db_session).seed_targets(["78701", "78702"], "TX", "google_maps", "plumber")
        ScheduleRunner(db_session).create_schedule(
            "tx", source_types=["google_maps"], strategy="all", delay_between_requests_ms=0
        )

        await scheduler_module.run_schedule_tick_job()

        assert sorted(t.zip_code for t in registered_source.targets) == ["78701", "78702"]
        assert {item.status for item in statuses(db_session).values()} == {"completed"}

    @pytest.mark.asyncio
    async def test_schedule_for_any_source_dispatches_registered_adapters(
        self, patched_sessions, registered_source, db_session
    ):
        WorkQueue(db_session).seed_targets(["78701"], "TX", "google_maps", "plumber")
        ScheduleRunner(db_session).create_schedule(
            "any-source", source_types=[], strategy="all", delay_between_requests_ms=0
        )

        await scheduler_module.run_schedule_tick_job()

        assert [t.zip_code for t in registered_source.targets] == ["78701"]
        assert statuses(db_session)["78701"].status == "completed"

    @pytest.mark.asyncio
    async def test_tick_without_adapters_only_enqueues(self, patched_sessions, db_session):
        scheduler_module._registered_sources.clear()
        WorkQueue(db_session).seed_targets(["78701"], "TX", "google_maps", "plumber")
        ScheduleRunner(db_session).create_schedule("tx", source_types=["google_maps"])

        await scheduler_module.run_schedule_tick_job()

        assert statuses(db_session)["78701"].status == "queued"


# ============================================================================
# TEST: Housekeeping job
# ============================================================================

class TestHousekeepingJob:

    @pytest.mark.asyncio
    async def test_reaps_and_requeues(self, patched_sessions, db_session, clock):
        clock.now = utcnow() - timedelta(days=3)
        queue = WorkQueue(db_session, clock=clock)

        queue.enqueue("78701", "TX", "google_maps", "plumber")
        failed = queue.claim_next()
        queue.record_result(failed.id, failed.attempt, Outcome.transient("503"))

        queue.enqueue("78702", "TX", "google_maps", "plumber")
        queue.claim_next(worker_id="dead-worker")

        await scheduler_module.housekeeping_job()

        items = statuses(db_session)
        assert items["78701"].status == "queued"
        assert items["78702"].status == "failed"
        assert items["78702"].last_error_type == "StaleClaim"


# ============================================================================
# TEST: Scheduler lifecycle
# ============================================================================

class TestStartStop:

    def test_registers_both_jobs(self):
        with patch.object(scheduler_module, "scheduler") as fake_scheduler:
            scheduler_module.start_scheduler(sources={"google_maps": EmptySource()})

        job_ids = [call.kwargs["id"] for call in fake_scheduler.add_job.call_args_list]
        assert job_ids == ["schedule_tick", "queue_housekeeping"]
        fake_scheduler.start.assert_called_once()
        assert list(scheduler_module._registered_sources) == ["google_maps"]
        scheduler_module._registered_sources.clear()

    def test_registers_providers(self, stub_provider):
        with patch.object(scheduler_module, "scheduler"):
            scheduler_module.start_scheduler(sources={}, providers=[stub_provider])

        assert scheduler_module._registered_providers == [stub_provider]
        scheduler_module._registered_providers.clear()

    def test_stop_only_when_running(self):
        with patch.object(scheduler_module, "scheduler") as fake_scheduler:
            fake_scheduler.running = False
            scheduler_module.stop_scheduler()

        fake_scheduler.shutdown.assert_not_called()


# ============================================================================
# TEST: Standalone worker
# ============================================================================

class TestWorkerMain:

    @pytest.mark.asyncio
    async def test_no_sources_configured(self):
        with patch.object(worker_main, "load_sources", return_value={}), \
                patch.object(worker_main, "init_db") as init_db:
            await worker_main.run_worker(max_rounds=1)

        init_db.assert_not_called()

    @pytest.mark.asyncio
    async def test_rounds_drain_the_queue(self, session_factory, db_session, monkeypatch):
        monkeypatch.setattr(settings, "WORKER_IDLE_SECONDS", 0)
        WorkQueue(db_session).enqueue("78701", "TX", "google_maps", "plumber")
        source = EmptySource()

        with patch.object(worker_main, "load_sources", return_value={"google_maps": source}), \
                patch.object(worker_main, "init_db"), \
                patch.object(worker_main, "SessionLocal", session_factory):
            await worker_main.run_worker(max_rounds=2)

        assert [t.zip_code for t in source.targets] == ["78701"]
        assert statuses(db_session)["78701"].status == "completed"

    @pytest.mark.asyncio
    async def test_configured_providers_reach_the_pipeline(
        self, session_factory, db_session, monkeypatch, joes_payload, stub_provider
    ):
        monkeypatch.setattr(settings, "WORKER_IDLE_SECONDS", 0)
        WorkQueue(db_session).enqueue("00961", "PR", "google_maps", "plumber")

        class JoesSource(EmptySource):
            async def fetch(self, target):
                await super().fetch(target)
                return FetchResult(records=[joes_payload])

        with patch.object(worker_main, "load_sources", return_value={"google_maps": JoesSource()}), \
                patch.object(worker_main, "load_providers", return_value=[stub_provider]) as load_providers, \
                patch.object(worker_main, "init_db"), \
                patch.object(worker_main, "SessionLocal", session_factory):
            await worker_main.run_worker(max_rounds=1)

        load_providers.assert_called_once_with(settings.PROVIDERS_CONFIG_PATH, settings.GOOGLE_KG_API_KEY)
        assert stub_provider.calls == 1
        assert db_session.query(GhostProfile).one().slug == "joes-plumbing"


# ============================================================================
# TEST: API startup
# ============================================================================

class TestApiStartup:

    @pytest.mark.asyncio
    async def test_startup_registers_sources_and_providers(self, monkeypatch, stub_provider):
        from progeodata import main

        monkeypatch.setattr(settings, "SCHEDULER_ENABLED", True)
        sources = {"google_maps": EmptySource()}

        with patch.object(main, "init_db"), \
                patch.object(main, "load_sources", return_value=sources), \
                patch.object(main, "load_providers", return_value=[stub_provider]) as load_providers, \
                patch.object(main, "start_scheduler") as start_scheduler:
            await main.startup_event()

        load_providers.assert_called_once_with(settings.PROVIDERS_CONFIG_PATH, settings.GOOGLE_KG_API_KEY)
        start_scheduler.assert_called_once_with(sources=sources, providers=[stub_provider])
