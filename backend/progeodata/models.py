# backend/progeodata/models.py
"""
SQLAlchemy ORM models for the lead-generation pipeline.

Three stages, three stores, one-directional promotion:

    RawBusinessRecord  ->  EnrichedLead  ->  GhostProfile
           |
           +-> ICPSignal (versioned, append-only)

Work scheduling lives in ScrapeQueueWorkItem / RateLimitBucket /
ScrapeSchedule, and every dispatch attempt leaves a QueueMessage.

Concurrency: work items and rate-limit buckets are mutated with
compare-and-set UPDATE statements (status + attempt / version columns),
never with in-process locks, because workers may run as separate processes.
"""

from sqlalchemy import (
    Column, String, Boolean, Integer, Float, Text, DateTime, Time, JSON, Index,
    ForeignKey, CheckConstraint, UniqueConstraint, event
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
import uuid

from progeodata.database import Base
from progeodata.utils import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# STATUS VOCABULARIES
# ============================================================================

RAW_STATUSES = ("new", "processed", "enriched", "rejected")
ICP_CATEGORIES = ("high", "medium", "low")
LEAD_STATUSES = ("enriched", "validated", "ready", "rejected")
LEAD_GRADES = ("A", "B", "C", "D")
WORK_ITEM_STATUSES = ("pending", "queued", "processing", "completed", "failed")
SCHEDULE_STRATEGIES = ("all", "priority", "failed", "random_sample")
MESSAGE_STATUSES = ("completed", "failed", "deferred")


def _in(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ============================================================================
# STAGE 1: RAW INGESTION
# ============================================================================

class RawBusinessRecord(Base):
    """
    Deduplicated business sighting from an external source.

    Identity is (source, source_id). A re-scrape updates the row in place;
    rows are never deleted.
    """
    __tablename__ = "raw_business_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # === SOURCE IDENTITY ===
    source = Column(String(50), nullable=False)       # google_maps, yellow_pages, FL_DBPR...
    source_id = Column(String(255), nullable=False)
    source_url = Column(Text)

    # === BUSINESS FIELDS ===
    name = Column(String(255), nullable=False)
    category = Column(String(100))
    address = Column(Text)
    city = Column(String(100))
    state = Column(String(50))
    postal_code = Column(String(20))
    phone = Column(String(50))
    email = Column(String(255))
    website = Column(String(500))
    facebook_url = Column(String(500))
    instagram_url = Column(String(500))

    # === GEO ===
    latitude = Column(Float)
    longitude = Column(Float)
    geocode_confidence = Column(Float)   # 0..1 as reported by the source, if any

    # === EXTERNAL PAYLOAD ===
    raw_data = Column(JSONType, nullable=False, default=dict)
    content_hash = Column(String(64), nullable=False)

    # === PROCESSING ===
    status = Column(String(20), nullable=False, default="new", index=True)
    scrape_count = Column(Integer, nullable=False, default=1)

    # === TIMESTAMPS ===
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_updated = Column(DateTime, nullable=False, default=utcnow)

    signals = relationship("ICPSignal", back_populates="raw_business", order_by="ICPSignal.computed_at")
    enriched_lead = relationship("EnrichedLead", back_populates="raw_business", uselist=False)

    __table_args__ = (
        UniqueConstraint("source", "source_id", name="uq_raw_business_source"),
        CheckConstraint(_in("status", RAW_STATUSES), name="chk_raw_business_status"),
        Index("idx_raw_business_state_postal", "state", "postal_code"),
    )

    def __repr__(self):
        return f"<RawBusinessRecord(id={self.id}, source='{self.source}', source_id='{self.source_id}')>"


class QuarantinedRecord(Base):
    """Payload that failed ingestion validation, kept for manual review."""
    __tablename__ = "quarantined_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source = Column(String(50), nullable=False)
    source_id = Column(String(255))
    attempted_data = Column(JSONType, nullable=False, default=dict)
    validation_errors = Column(JSONType, nullable=False, default=list)
    error_severity = Column(String(20), nullable=False, default="major")   # critical, major, minor
    needs_review = Column(Boolean, nullable=False, default=True)
    quarantined_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_quarantine_review", "needs_review", "quarantined_at"),
    )


# ============================================================================
# ICP SIGNALS (append-only)
# ============================================================================

class ICPSignal(Base):
    """
    Output of one detector version over one raw record snapshot.

    Recomputed, never mutated: a new detector version or changed input
    produces a new row.
    """
    __tablename__ = "icp_signals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    raw_business_id = Column(UUID(as_uuid=True), ForeignKey("raw_business_records.id"), nullable=False, index=True)
    detector_version = Column(String(50), nullable=False)
    input_hash = Column(String(64), nullable=False)

    no_website = Column(Boolean, nullable=False)
    unmappable_address = Column(Boolean, nullable=False)
    mobile_business = Column(Boolean, nullable=False)
    ghost_business = Column(Boolean, nullable=False)

    address_complexity_score = Column(Float, nullable=False)
    findability_score = Column(Float, nullable=False)
    icp_score = Column(Float, nullable=False)
    icp_category = Column(String(10), nullable=False)
    breakdown = Column(JSONType, nullable=False, default=dict)

    computed_at = Column(DateTime, nullable=False, default=utcnow)

    raw_business = relationship("RawBusinessRecord", back_populates="signals")

    __table_args__ = (
        UniqueConstraint("raw_business_id", "detector_version", "input_hash", name="uq_icp_signal_input"),
        CheckConstraint(_in("icp_category", ICP_CATEGORIES), name="chk_icp_category"),
        CheckConstraint("icp_score >= 0 AND icp_score <= 100", name="chk_icp_score_range"),
    )


# ============================================================================
# STAGE 2: ENRICHED LEADS
# ============================================================================

class EnrichedLead(Base):
    """
    Validated and scored lead. Exactly one per RawBusinessRecord.

    Status moves forward only (enriched -> validated -> ready); `rejected`
    is terminal and requires a reason.
    """
    __tablename__ = "enriched_leads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    raw_business_id = Column(UUID(as_uuid=True), ForeignKey("raw_business_records.id"), nullable=False, unique=True)
    icp_signal_id = Column(UUID(as_uuid=True), ForeignKey("icp_signals.id"), nullable=False)

    # === BUSINESS ===
    business_name = Column(String(255), nullable=False)
    category = Column(String(100))
    categories = Column(JSONType, nullable=False, default=list)
    address = Column(Text)
    city = Column(String(100))
    state = Column(String(50))
    postal_code = Column(String(20))

    # === CONTACT / OWNERSHIP ===
    owner_name = Column(String(255))
    owner_first_name = Column(String(100))
    owner_last_name = Column(String(100))
    email = Column(String(255))
    phone = Column(String(50))
    phone_valid = Column(Boolean, nullable=False, default=False)
    website = Column(String(500))
    facebook_url = Column(String(500))
    instagram_url = Column(String(500))

    # === BUSINESS SIGNALS ===
    review_count = Column(Integer)
    rating = Column(Float)
    years_in_business = Column(Integer)

    # === SCORING ===
    enrichment_sources = Column(JSONType, nullable=False, default=list)
    enrichment_confidence = Column(Float, nullable=False, default=0.0)
    icp_score = Column(Float, nullable=False)
    lead_score = Column(Float, nullable=False)
    lead_grade = Column(String(1), nullable=False)
    score_version = Column(String(50), nullable=False)

    # === STATUS ===
    status = Column(String(20), nullable=False, default="enriched", index=True)
    rejection_reason = Column(Text)

    enriched_at = Column(DateTime, nullable=False, default=utcnow)
    validated_at = Column(DateTime)
    ready_at = Column(DateTime)
    rejected_at = Column(DateTime)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    raw_business = relationship("RawBusinessRecord", back_populates="enriched_lead")
    icp_signal = relationship("ICPSignal")
    ghost_profile = relationship("GhostProfile", back_populates="enriched_lead", uselist=False)

    __table_args__ = (
        CheckConstraint(_in("status", LEAD_STATUSES), name="chk_lead_status"),
        CheckConstraint(_in("lead_grade", LEAD_GRADES), name="chk_lead_grade"),
        CheckConstraint("status != 'rejected' OR rejection_reason IS NOT NULL", name="chk_lead_rejection_reason"),
        CheckConstraint("lead_score >= 0 AND lead_score <= 100", name="chk_lead_score_range"),
        Index("idx_enriched_leads_grade", "status", "lead_grade"),
    )

    def to_dict(self):
        """Read view for downstream lead routing."""
        return {
            "id": str(self.id),
            "raw_business_id": str(self.raw_business_id),
            "business_name": self.business_name,
            "category": self.category,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "owner_name": self.owner_name,
            "email": self.email,
            "phone": self.phone,
            "website": self.website,
            "facebook_url": self.facebook_url,
            "instagram_url": self.instagram_url,
            "review_count": self.review_count,
            "rating": self.rating,
            "years_in_business": self.years_in_business,
            "enrichment_confidence": self.enrichment_confidence,
            "icp_score": self.icp_score,
            "lead_score": self.lead_score,
            "lead_grade": self.lead_grade,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "enriched_at": self.enriched_at.isoformat() if self.enriched_at else None,
        }


# ============================================================================
# STAGE 3: GHOST PROFILES
# ============================================================================

class GhostProfile(Base):
    """Published, claimable listing. Exactly one per EnrichedLead."""
    __tablename__ = "ghost_profiles"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    enriched_lead_id = Column(UUID(as_uuid=True), ForeignKey("enriched_leads.id"), nullable=False, unique=True)
    slug = Column(String(200), nullable=False, unique=True)

    business_name = Column(String(255), nullable=False)
    category = Column(String(100))
    city = Column(String(100))
    state = Column(String(50))
    postal_code = Column(String(20))
    phone = Column(String(50))

    # === SEO ===
    seo_title = Column(String(255), nullable=False)
    seo_description = Column(Text, nullable=False)
    seo_keywords = Column(JSONType, nullable=False, default=list)
    canonical_url = Column(String(500), nullable=False)
    schema_org = Column(JSONType, nullable=False, default=dict)

    # === CLAIM ===
    is_claimed = Column(Boolean, nullable=False, default=False)
    claimed_at = Column(DateTime)
    claimed_by = Column(String(255))

    published_at = Column(DateTime, nullable=False, default=utcnow)

    enriched_lead = relationship("EnrichedLead", back_populates="ghost_profile")

    __table_args__ = (
        CheckConstraint("is_claimed = (claimed_at IS NOT NULL)", name="chk_ghost_claim_consistent"),
    )

    def to_dict(self):
        return {
            "id": str(self.id),
            "enriched_lead_id": str(self.enriched_lead_id),
            "slug": self.slug,
            "business_name": self.business_name,
            "category": self.category,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "phone": self.phone,
            "seo_title": self.seo_title,
            "seo_description": self.seo_description,
            "seo_keywords": self.seo_keywords,
            "canonical_url": self.canonical_url,
            "schema_org": self.schema_org,
            "is_claimed": self.is_claimed,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }


# ============================================================================
# WORK QUEUE
# ============================================================================

class ScrapeQueueWorkItem(Base):
    """
    Retryable unit of scraping work keyed by geography + source + profession.

    `attempt` increments on every successful claim; completion reports carry
    the attempt they belong to and are rejected once it has moved on.
    """
    __tablename__ = "scrape_queue_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    zip_code = Column(String(10), nullable=False)
    state = Column(String(2), nullable=False)
    source_type = Column(String(50), nullable=False)
    profession = Column(String(50), nullable=False, default="general")

    status = Column(String(20), nullable=False, default="pending")
    priority = Column(Integer, nullable=False, default=5)
    attempt = Column(Integer, nullable=False, default=0)

    # === RETRY TRACKING ===
    consecutive_failures = Column(Integer, nullable=False, default=0)
    total_attempts = Column(Integer, nullable=False, default=0)
    successful_scrapes = Column(Integer, nullable=False, default=0)
    failed_scrapes = Column(Integer, nullable=False, default=0)
    needs_review = Column(Boolean, nullable=False, default=False)
    next_retry_at = Column(DateTime)
    last_error = Column(Text)
    last_error_type = Column(String(50))

    # === RESULTS ===
    last_result_count = Column(Integer)
    total_records_found = Column(Integer, nullable=False, default=0)

    # === TIMESTAMPS ===
    queued_at = Column(DateTime)
    claimed_at = Column(DateTime)
    claimed_by = Column(String(100))
    last_attempted_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("zip_code", "state", "source_type", "profession", name="uq_scrape_queue_key"),
        CheckConstraint(_in("status", WORK_ITEM_STATUSES), name="chk_work_item_status"),
        Index("idx_scrape_queue_dispatch", "status", "source_type", "priority", "queued_at"),
        Index("idx_scrape_queue_retry", "status", "next_retry_at"),
    )

    @property
    def key(self):
        return (self.zip_code, self.state, self.source_type, self.profession)

    def to_dict(self):
        return {
            "id": str(self.id),
            "zip_code": self.zip_code,
            "state": self.state,
            "source_type": self.source_type,
            "profession": self.profession,
            "status": self.status,
            "priority": self.priority,
            "attempt": self.attempt,
            "consecutive_failures": self.consecutive_failures,
            "needs_review": self.needs_review,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScrapeQueueWorkItem({self.state}/{self.zip_code}/{self.source_type}/{self.profession} status={self.status})>"


class QueueMessage(Base):
    """Immutable audit row for one dispatch attempt."""
    __tablename__ = "queue_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    work_item_id = Column(UUID(as_uuid=True), ForeignKey("scrape_queue_items.id"), nullable=False, index=True)
    attempt = Column(Integer, nullable=False)
    retry_of_id = Column(UUID(as_uuid=True), ForeignKey("queue_messages.id"))
    worker_id = Column(String(100))

    source_type = Column(String(50), nullable=False)
    zip_code = Column(String(10), nullable=False)
    state = Column(String(2), nullable=False)

    status = Column(String(20), nullable=False)
    result_count = Column(Integer, nullable=False, default=0)
    stored_count = Column(Integer, nullable=False, default=0)
    error_type = Column(String(50))
    error_message = Column(Text)

    started_at = Column(DateTime)
    finished_at = Column(DateTime, nullable=False, default=utcnow)
    duration_ms = Column(Integer)

    __table_args__ = (
        CheckConstraint(_in("status", MESSAGE_STATUSES), name="chk_queue_message_status"),
        Index("idx_queue_messages_finished", "finished_at"),
    )


# ============================================================================
# RATE LIMITING
# ============================================================================

class RateLimitBucket(Base):
    """
    Multi-window request gate for one (source_type, source_key).

    A limit of NULL means the window is unbounded. `version` is bumped on
    every write and used for compare-and-set.
    """
    __tablename__ = "rate_limit_buckets"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source_type = Column(String(50), nullable=False)
    source_key = Column(String(100), nullable=False)

    # === LIMITS ===
    requests_per_second = Column(Integer)
    requests_per_minute = Column(Integer)
    requests_per_hour = Column(Integer)
    requests_per_day = Column(Integer)

    # === WINDOW COUNTERS ===
    second_count = Column(Integer, nullable=False, default=0)
    second_reset_at = Column(DateTime)
    minute_count = Column(Integer, nullable=False, default=0)
    minute_reset_at = Column(DateTime)
    hour_count = Column(Integer, nullable=False, default=0)
    hour_reset_at = Column(DateTime)
    day_count = Column(Integer, nullable=False, default=0)
    day_reset_at = Column(DateTime)

    # === THROTTLE OVERRIDE ===
    is_throttled = Column(Boolean, nullable=False, default=False)
    throttled_until = Column(DateTime)

    # === STATS ===
    total_requests = Column(Integer, nullable=False, default=0)
    total_successes = Column(Integer, nullable=False, default=0)
    total_failures = Column(Integer, nullable=False, default=0)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_request_at = Column(DateTime)
    last_error = Column(Text)

    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("source_type", "source_key", name="uq_rate_limit_bucket"),
    )


# ============================================================================
# SCHEDULING
# ============================================================================

class ScrapeSchedule(Base):
    """Recurring job descriptor evaluated by the scheduling loop."""
    __tablename__ = "scrape_schedules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False, unique=True)
    enabled = Column(Boolean, nullable=False, default=True)

    # === TARGET SELECTOR ===
    states = Column(JSONType, nullable=False, default=list)         # [] = any
    source_types = Column(JSONType, nullable=False, default=list)
    professions = Column(JSONType, nullable=False, default=list)
    strategy = Column(String(20), nullable=False, default="priority")
    zip_limit_per_run = Column(Integer, nullable=False, default=100)
    priority = Column(Integer)                                      # overrides item priority on enqueue

    # === TIMING ===
    frequency_hours = Column(Float, nullable=False, default=24.0)
    cron_expression = Column(String(100))
    start_time = Column(Time)
    end_time = Column(Time)
    days_of_week = Column(JSONType, nullable=False, default=list)   # ISO weekdays, [] = every day
    next_run_at = Column(DateTime)

    # === DISPATCH BOUNDS ===
    max_concurrent = Column(Integer, nullable=False, default=1)
    delay_between_requests_ms = Column(Integer, nullable=False, default=1000)

    # === LAST RUN ===
    last_run_at = Column(DateTime)
    last_run_status = Column(String(20))
    last_run_enqueued = Column(Integer)
    last_error = Column(Text)
    total_runs = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(_in("strategy", SCHEDULE_STRATEGIES), name="chk_schedule_strategy"),
        CheckConstraint("zip_limit_per_run > 0", name="chk_schedule_limit"),
    )


# ============================================================================
# IMMUTABILITY GUARDS
# ============================================================================

@event.listens_for(ICPSignal, "before_update")
def _icp_signal_is_append_only(mapper, connection, target):
    raise ValueError("ICPSignal rows are immutable; compute a new version instead")


@event.listens_for(QueueMessage, "before_update")
def _queue_message_is_append_only(mapper, connection, target):
    raise ValueError("QueueMessage rows are immutable")


@event.listens_for(GhostProfile.slug, "set", active_history=True)
def _slug_is_write_once(target, value, oldvalue, initiator):
    if oldvalue not in (None, value) and isinstance(oldvalue, str):
        raise ValueError(f"Ghost profile slug is immutable (was '{oldvalue}')")
