"""Seed the work queue with target ZIP codes and a default daily schedule."""

import asyncio
import os

from progeodata.database import SessionLocal, init_db
from progeodata.models import ScrapeSchedule
from progeodata.services.scheduler_service import ScheduleRunner
from progeodata.services.work_queue import WorkQueue

# Sample targets
TARGETS = {
    "TX": ["78701", "78702", "78703", "78704", "78705"],
    "AZ": ["85001", "85003", "85004"],
    "PR": ["00901", "00907"],
}
PROFESSIONS = ["plumber", "electrician", "hvac"]


async def seed_queue(source_type: str = "google_maps"):
    """Seed pending targets and a daily schedule for one source type."""
    init_db()
    db = SessionLocal()
    try:
        print(f"🌱 Seeding work queue for {source_type}...")

        queue = WorkQueue(db)
        created = 0
        for state, zip_codes in TARGETS.items():
            for profession in PROFESSIONS:
                created += queue.seed_targets(zip_codes, state, source_type, profession)
        print(f"✅ Created {created} pending targets")

        name = f"daily-{source_type}"
        if db.query(ScrapeSchedule).filter(ScrapeSchedule.name == name).first():
            print(f"⚠️  Schedule '{name}' already exists, leaving it alone")
            return

        ScheduleRunner(db).create_schedule(
            name,
            source_types=[source_type],
            strategy="priority",
            zip_limit_per_run=50,
            frequency_hours=24.0,
            max_concurrent=2,
            delay_between_requests_ms=1000
        )
        print(f"✅ Created schedule '{name}'")
    finally:
        db.close()


if __name__ == "__main__":
    asyncio.run(seed_queue(os.environ.get("SEED_SOURCE_TYPE", "google_maps")))
