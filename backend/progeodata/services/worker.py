# backend/progeodata/services/worker.py
"""
Pipeline Worker + Dispatch Loop

One worker iteration:
    claim -> wait for rate-limit slot -> fetch (bounded) -> ingest
          -> lead pipeline -> record result

The limiter wait happens after the claim commit, so a waiting worker holds
no row locks. Any number of workers (tasks or processes) can run this
against the same database.
"""

import asyncio
import logging
import socket
import uuid
from typing import Any, Callable, Dict, List, Optional, Awaitable

from sqlalchemy.orm import Session

from progeodata.config import settings
from progeodata.exceptions import (
    PipelineError, TransientSourceError, RateLimitExceeded, StaleAttemptError
)
from progeodata.models import ScrapeQueueWorkItem
from progeodata.services.ingestion import IngestionStore
from progeodata.services.pipeline import LeadPipeline
from progeodata.services.rate_limiter import RateLimiter
from progeodata.services.work_queue import WorkQueue, Outcome
from progeodata.sources.base import SourceAdapter, EnrichmentProvider, FetchTarget
from progeodata.schemas.business import FetchResult
from progeodata.utils import Clock, utcnow

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class PipelineWorker:
    """Processes queued work items one at a time."""

    def __init__(
        self,
        db: Session,
        sources: Dict[str, SourceAdapter],
        providers: Optional[List[EnrichmentProvider]] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        worker_id: Optional[str] = None,
        fetch_timeout: Optional[float] = None
    ):
        self.db = db
        self.sources = sources
        self.clock = clock
        self.worker_id = worker_id or default_worker_id()
        self.fetch_timeout = fetch_timeout or settings.FETCH_TIMEOUT_SECONDS

        self.queue = WorkQueue(db, clock=clock)
        self.limiter = RateLimiter(db, clock=clock, sleep=sleep)
        self.ingestion = IngestionStore(db, clock=clock)
        self.pipeline = LeadPipeline(db, providers=providers, clock=clock)

    def max_limiter_wait(self) -> float:
        """
        Longest a claimed item may wait for a limiter slot.

        Capped at half of STALE_CLAIM_SECONDS so a waiting claim is never
        reaped; a longer wait becomes a deferral instead.
        """
        ceiling = settings.STALE_CLAIM_SECONDS / 2
        configured = settings.RATE_LIMIT_MAX_WAIT_SECONDS
        return ceiling if configured is None else min(configured, ceiling)

    async def process_next(self, source_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Claim and process the next item. Returns None when nothing is queued."""
        item = self.queue.claim_next(source_type, worker_id=self.worker_id)
        if item is None:
            return None
        return await self.process_item(item)

    async def process_item(self, item: ScrapeQueueWorkItem) -> Dict[str, Any]:
        """Process an item this worker has already claimed."""
        started_at = self.clock()
        source_type, source_key = item.source_type, item.state

        adapter = self.sources.get(source_type)
        if adapter is None:
            return self._finish(item, Outcome.permanent(f"No source adapter for '{source_type}'"), started_at)

        # Local limiter first; giving up here is a deferral, not a source failure
        try:
            await self.limiter.wait_for_slot(source_type, source_key, max_wait=self.max_limiter_wait())
        except RateLimitExceeded as e:
            return self._finish(item, Outcome.deferred(e.retry_after, str(e)), started_at)

        try:
            fetched = await self._fetch(adapter, FetchTarget.from_item(item))
        except RateLimitExceeded as e:
            # Upstream 429: throttle the bucket for every worker
            self.limiter.on_failure(source_type, source_key, error=str(e), throttle=True, retry_after=e.retry_after)
            return self._finish(item, Outcome.from_exception(e), started_at)
        except PipelineError as e:
            self.limiter.on_failure(source_type, source_key, error=str(e))
            return self._finish(item, Outcome.from_exception(e), started_at)
        except Exception as e:
            logger.error(f"Unexpected error from {source_type} adapter: {e}", exc_info=True)
            self.limiter.on_failure(source_type, source_key, error=str(e))
            return self._finish(item, Outcome.from_exception(e), started_at)

        self.limiter.on_success(source_type, source_key)

        summary = self.ingestion.upsert_many(source_type, fetched.records)
        batch = await self.pipeline.process_batch([record.id for record in summary.records])

        result = self._finish(
            item,
            Outcome.success(result_count=len(fetched.records), stored_count=summary.stored),
            started_at
        )
        result.update(
            quarantined=summary.quarantined,
            published=batch["published"],
            pipeline_failures=batch["failed"]
        )
        return result

    async def _fetch(self, adapter: SourceAdapter, target: FetchTarget) -> FetchResult:
        try:
            return await asyncio.wait_for(adapter.fetch(target), timeout=self.fetch_timeout)
        except asyncio.TimeoutError as e:
            raise TransientSourceError(f"Fetch timed out after {self.fetch_timeout}s") from e

    def _finish(self, item: ScrapeQueueWorkItem, outcome: Outcome, started_at) -> Dict[str, Any]:
        result = {
            "item_id": str(item.id),
            "attempt": item.attempt,
            "outcome": outcome.kind,
            "result_count": outcome.result_count,
            "stored_count": outcome.stored_count,
            "error": outcome.error,
        }
        try:
            self.queue.record_result(item.id, item.attempt, outcome, started_at=started_at)
        except StaleAttemptError:
            logger.warning(f"Result for {item.id} attempt {item.attempt} arrived after the claim expired")
            result["outcome"] = "stale"
        return result


class DispatchLoop:
    """
    Runs worker iterations with bounded concurrency and a fixed delay
    between dispatch starts. Each iteration gets its own session.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sources: Dict[str, SourceAdapter],
        providers: Optional[List[EnrichmentProvider]] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        worker_id: Optional[str] = None
    ):
        self.session_factory = session_factory
        self.sources = sources
        self.providers = providers
        self.clock = clock
        self.sleep = sleep
        self.worker_id = worker_id or default_worker_id()

        self.items_processed = 0

    async def _dispatch_one(self, semaphore: asyncio.Semaphore, source_type: Optional[str], n: int):
        async with semaphore:
            db = self.session_factory()
            try:
                worker = PipelineWorker(
                    db,
                    self.sources,
                    providers=self.providers,
                    clock=self.clock,
                    sleep=self.sleep,
                    worker_id=f"{self.worker_id}-{n}"
                )
                return await worker.process_next(source_type)
            except Exception as e:
                logger.error(f"Dispatch {n} crashed: {e}", exc_info=True)
                return {"outcome": "error", "error": str(e)}
            finally:
                db.close()

    async def run(
        self,
        source_type: Optional[str] = None,
        max_items: int = 10,
        max_concurrent: int = 1,
        delay_ms: int = 0
    ) -> Dict[str, int]:
        """
        Dispatch up to max_items iterations; stops early once the queue is empty.
        """
        semaphore = asyncio.Semaphore(max(1, max_concurrent))
        tasks = []

        for n in range(max_items):
            if any(t.done() and t.result() is None for t in tasks):
                break
            tasks.append(asyncio.create_task(self._dispatch_one(semaphore, source_type, n)))
            if delay_ms and n < max_items - 1:
                await self.sleep(delay_ms / 1000)

        results = await asyncio.gather(*tasks)

        stats = {"dispatched": 0, "success": 0, "transient": 0, "permanent": 0, "deferred": 0, "stale": 0, "error": 0}
        for result in results:
            if result is None:
                continue
            stats["dispatched"] += 1
            stats[result["outcome"]] = stats.get(result["outcome"], 0) + 1

        self.items_processed += stats["dispatched"]
        logger.info(
            f"📦 Dispatch {source_type or 'all sources'}: {stats['dispatched']} items, "
            f"{stats['success']} ok, {stats['transient'] + stats['permanent']} failed, "
            f"{stats['deferred']} deferred"
        )
        return stats
