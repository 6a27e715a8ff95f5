"""
Standalone scrape worker.

Drains the work queue with the adapters defined in SOURCES_CONFIG_PATH
and the enrichment providers from PROVIDERS_CONFIG_PATH / GOOGLE_KG_API_KEY.
Run with: python -m progeodata.worker_main
"""

import asyncio
import logging

from progeodata.config import settings
from progeodata.database import SessionLocal, init_db
from progeodata.services.worker import DispatchLoop
from progeodata.sources import load_providers, load_sources

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


async def run_worker(max_rounds=None):
    """
    Dispatch in rounds of CLAIM_BATCH_SIZE; sleep WORKER_IDLE_SECONDS
    whenever a round finds nothing to do.
    """
    sources = load_sources(settings.SOURCES_CONFIG_PATH)
    if not sources:
        logger.error("❌ No source adapters configured. Set SOURCES_CONFIG_PATH.")
        return

    providers = load_providers(settings.PROVIDERS_CONFIG_PATH, settings.GOOGLE_KG_API_KEY)

    init_db()
    loop = DispatchLoop(SessionLocal, sources, providers=providers)
    logger.info(
        f"🚀 Worker {loop.worker_id} started with sources: {sorted(sources)}, "
        f"providers: {[p.name for p in providers]}"
    )

    rounds = 0
    while max_rounds is None or rounds < max_rounds:
        rounds += 1
        stats = await loop.run(
            max_items=settings.CLAIM_BATCH_SIZE,
            max_concurrent=settings.WORKER_CONCURRENCY
        )
        if stats["dispatched"] == 0:
            await asyncio.sleep(settings.WORKER_IDLE_SECONDS)

    logger.info(f"Worker {loop.worker_id} finished: {loop.items_processed} items processed")


if __name__ == "__main__":
    asyncio.run(run_worker())
