# tests/conftest.py
"""Shared fixtures - file-backed SQLite per test + a controllable clock"""

import os
import pytest
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from progeodata.database import init_db
from progeodata.models import EnrichedLead
from progeodata.schemas.business import PartialEnrichment
from progeodata.services.icp_detector import ICPSignalDetector
from progeodata.services.ingestion import IngestionStore
from progeodata.sources.base import EnrichmentProvider


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: end-to-end tests against a real database")


# ============================================================================
# CLOCK
# ============================================================================

class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock():
    # Wednesday, mid-morning
    return FrozenClock(datetime(2026, 3, 4, 10, 0, 0))


@pytest.fixture
def fake_sleep(clock):
    """asyncio.sleep replacement that advances the frozen clock instead"""
    calls = []

    async def _sleep(seconds: float):
        calls.append(seconds)
        clock.advance(seconds)

    _sleep.calls = calls
    return _sleep


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def engine(tmp_path):
    """Fresh database per test (file-backed so several sessions can share it)"""
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'pipeline.db'}"
    engine = create_engine(url, connect_args={"check_same_thread": False} if url.startswith("sqlite") else {})
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# SAMPLE DATA
# ============================================================================

@pytest.fixture
def joes_payload():
    """Hard-to-find plumber: no website, interior unit address"""
    return {
        "source_id": "abc123",
        "name": "Joe's Plumbing",
        "website": None,
        "address": "Calle 7 Int 4B",
        "city": "Bayamon",
        "state": "PR",
        "postal_code": "00961",
    }


@pytest.fixture
def storefront_payload():
    """Easy-to-find business: website, phone, street address, coordinates"""
    return {
        "source_id": "xyz789",
        "name": "Main Street Pharmacy",
        "category": "Pharmacy",
        "address": "123 Main St",
        "city": "Austin",
        "state": "TX",
        "postal_code": "78701",
        "phone": "(650) 253-0000",
        "website": "mainstreetpharmacy.com",
        "latitude": 30.2672,
        "longitude": -97.7431,
        "geocode_confidence": 0.95,
    }


class StubProvider(EnrichmentProvider):
    """Enrichment provider returning canned data"""

    def __init__(self, name="stub", quality=0.7, error: Optional[Exception] = None, **data):
        self.name = name
        self.quality = quality
        self.error = error
        self.data = data
        self.calls = 0

    async def enrich_external(self, raw):
        self.calls += 1
        if self.error:
            raise self.error
        if not self.data:
            return None
        return PartialEnrichment(provider=self.name, quality=self.quality, **self.data)


@pytest.fixture
def provider_factory():
    return StubProvider


@pytest.fixture
def stub_provider():
    return StubProvider(
        name="maps_details",
        quality=0.7,
        phone="787-555-0142",
        owner_name="Joe Rivera",
        review_count=12,
        rating=4.5,
        years_in_business=8,
        categories=["plumbing"],
    )


@pytest.fixture
def make_ready_lead(db_session, clock):
    """Factory: raw record + ICP signal + `ready` EnrichedLead, bypassing providers"""
    counter = {"n": 0}

    def _make(name="Joe's Plumbing", city="Bayamon", state="PR", grade="B", **fields) -> EnrichedLead:
        counter["n"] += 1
        raw, _ = IngestionStore(db_session, clock=clock).upsert("google_maps", {
            "source_id": f"lead-{counter['n']}",
            "name": name,
            "city": city,
            "state": state,
            "address": "Calle 7 Int 4B",
        })
        signal = ICPSignalDetector(db_session, clock=clock).score(raw)

        lead = EnrichedLead(
            raw_business_id=raw.id,
            icp_signal_id=signal.id,
            business_name=name,
            category=fields.pop("category", "plumbing"),
            categories=["plumbing"],
            address=raw.address,
            city=city,
            state=state,
            postal_code=fields.pop("postal_code", "00961"),
            phone=fields.pop("phone", "+17875550142"),
            phone_valid=True,
            icp_score=signal.icp_score,
            lead_score=fields.pop("lead_score", 73.04),
            lead_grade=grade,
            score_version="lead-v2",
            status=fields.pop("status", "ready"),
            enriched_at=clock(),
            updated_at=clock(),
            **fields
        )
        db_session.add(lead)
        db_session.commit()
        return lead

    return _make
