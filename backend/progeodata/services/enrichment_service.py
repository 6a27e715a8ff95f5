# backend/progeodata/services/enrichment_service.py
"""
Lead Enrichment Service - Raw record -> EnrichedLead

Waterfall over the configured providers (highest quality first), merge
what they return onto the raw record, score, grade, persist. Exactly one
EnrichedLead per raw record: concurrent attempts collapse onto the row that
won the unique constraint.

POLICY lead-v2 (default)
------------------------
    icp_score * 0.8                          (max 80)
    enrichment_confidence * 8                (max 8)
    4 * min(review_count, 50) / 50           (max 4)
    4 * rating / 5                           (max 4)
    4 * min(years_in_business, 10) / 10      (max 4)

Every high ICP record (>= 70) reaches grade B on its own, so a
hard-to-find business is publishable even when no provider knows it.

POLICY lead-v1
--------------
    icp_score * 0.6                          (max 60)
    enrichment_confidence * 20               (max 20)
    7 * min(review_count, 50) / 50           (max 7)
    7 * rating / 5                           (max 7)
    6 * min(years_in_business, 10) / 10      (max 6)

Grades: A >= 75, B >= 55, C >= 40, D otherwise.
enrichment_confidence = 1 - prod(1 - quality) over providers that returned data.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Any
from datetime import datetime
import logging
import time

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from progeodata.config import settings
from progeodata.exceptions import InvalidLeadTransition, LeadNotPublishable, UnknownPolicyVersion
from progeodata.models import EnrichedLead, ICPSignal, RawBusinessRecord
from progeodata.schemas.business import PartialEnrichment
from progeodata.services.normalization import normalization_service
from progeodata.sources.base import EnrichmentProvider
from progeodata.utils import Clock, utcnow, clamp

logger = logging.getLogger(__name__)


# Forward-only lead lifecycle; rejected is terminal
LEAD_TRANSITIONS = {
    "enriched": {"validated", "rejected"},
    "validated": {"ready", "rejected"},
    "ready": {"rejected"},
    "rejected": set(),
}

# Contact fields merged from providers when the raw record lacks them
MERGEABLE_FIELDS = ("email", "phone", "website", "facebook_url", "instagram_url")


@dataclass(frozen=True)
class LeadScorePolicy:
    """Versioned lead scoring weights and grade thresholds"""
    version: str
    icp_weight: float = 0.6
    confidence_points: float = 20
    review_points: float = 7
    review_cap: int = 50
    rating_points: float = 7
    years_points: float = 6
    years_cap: int = 10
    grade_thresholds: Tuple[Tuple[str, float], ...] = (("A", 75), ("B", 55), ("C", 40))

    def score(
        self,
        icp_score: float,
        confidence: float,
        review_count: Optional[int] = None,
        rating: Optional[float] = None,
        years_in_business: Optional[int] = None
    ) -> Tuple[float, Dict[str, float]]:
        components = {
            "icp": icp_score * self.icp_weight,
            "confidence": confidence * self.confidence_points,
            "reviews": self.review_points * min(review_count or 0, self.review_cap) / self.review_cap,
            "rating": self.rating_points * (rating or 0) / 5,
            "years": self.years_points * min(years_in_business or 0, self.years_cap) / self.years_cap,
        }
        components = {name: round(value, 2) for name, value in components.items()}
        return round(clamp(sum(components.values())), 2), components

    def grade(self, lead_score: float) -> str:
        for grade, threshold in self.grade_thresholds:
            if lead_score >= threshold:
                return grade
        return "D"


LEAD_V1 = LeadScorePolicy(version="lead-v1")

LEAD_V2 = LeadScorePolicy(
    version="lead-v2",
    icp_weight=0.8,
    confidence_points=8,
    review_points=4,
    rating_points=4,
    years_points=4,
)

LEAD_POLICIES: Dict[str, LeadScorePolicy] = {
    LEAD_V1.version: LEAD_V1,
    LEAD_V2.version: LEAD_V2,
}


def get_lead_policy(version: Optional[str] = None) -> LeadScorePolicy:
    version = version or settings.LEAD_SCORE_VERSION
    try:
        return LEAD_POLICIES[version]
    except KeyError:
        raise UnknownPolicyVersion(f"Unknown lead score version '{version}'")


class EnrichmentResult:
    """Merged provider output with field-level tracking"""

    def __init__(
        self,
        enriched_data: Dict = None,
        fields_added: List[str] = None,
        providers_used: List[str] = None,
        providers_failed: List[str] = None,
        confidence: float = 0.0,
        processing_time_ms: int = 0
    ):
        self.enriched_data = enriched_data or {}
        self.fields_added = fields_added or []
        self.providers_used = providers_used or []
        self.providers_failed = providers_failed or []
        self.confidence = confidence
        self.processing_time_ms = processing_time_ms

    def to_dict(self) -> Dict:
        return {
            "enriched_data": self.enriched_data,
            "fields_added": self.fields_added,
            "providers_used": self.providers_used,
            "providers_failed": self.providers_failed,
            "confidence": self.confidence,
        }


class LeadEnricher:
    """
    Multi-provider enrichment and lead lifecycle.

    Providers are external collaborators; a failing provider is logged and
    skipped, never fatal for the record.
    """

    def __init__(
        self,
        db: Session,
        providers: Optional[List[EnrichmentProvider]] = None,
        clock: Clock = utcnow,
        policy_version: Optional[str] = None
    ):
        self.db = db
        self.providers = sorted(providers or [], key=lambda p: p.quality, reverse=True)
        self.clock = clock
        self.policy = get_lead_policy(policy_version)

        names = ", ".join(p.name for p in self.providers)
        logger.debug(f"Enrichment providers enabled: {names or 'None'}")

    # ========================================================================
    # PROVIDER WATERFALL
    # ========================================================================

    async def gather(self, raw: RawBusinessRecord) -> EnrichmentResult:
        """Ask every provider, merge in quality order (first value wins)."""
        start = time.monotonic()
        merged: Dict[str, Any] = {"categories": []}
        fields_added: List[str] = []
        used: List[str] = []
        failed: List[str] = []
        miss_product = 1.0

        for provider in self.providers:
            try:
                partial = await provider.enrich_external(raw)
            except Exception as e:
                logger.warning(f"Provider {provider.name} failed for {raw.id}: {e}")
                failed.append(provider.name)
                continue

            if partial is None or partial.is_empty():
                continue

            used.append(partial.provider)
            miss_product *= (1 - partial.quality)
            self._merge(raw, merged, partial, fields_added)

        result = EnrichmentResult(
            enriched_data=merged,
            fields_added=fields_added,
            providers_used=used,
            providers_failed=failed,
            confidence=round(1 - miss_product, 4) if used else 0.0,
            processing_time_ms=int((time.monotonic() - start) * 1000)
        )
        logger.debug(
            f"Enrichment for {raw.id}: providers={used} added={fields_added} "
            f"confidence={result.confidence}"
        )
        return result

    @staticmethod
    def _merge(raw: RawBusinessRecord, merged: Dict[str, Any], partial: PartialEnrichment, fields_added: List[str]):
        for field in MERGEABLE_FIELDS:
            value = getattr(partial, field)
            if value and not getattr(raw, field, None) and field not in merged:
                merged[field] = value
                fields_added.append(field)

        for field in ("owner_name", "review_count", "rating", "years_in_business"):
            value = getattr(partial, field)
            if value is not None and field not in merged:
                merged[field] = value
                fields_added.append(field)

        for category in partial.categories:
            if category not in merged["categories"]:
                merged["categories"].append(category)

    # ========================================================================
    # ENRICH
    # ========================================================================

    def get_for_raw(self, raw_id) -> Optional[EnrichedLead]:
        return self.db.query(EnrichedLead).filter(EnrichedLead.raw_business_id == raw_id).first()

    async def enrich(self, raw: RawBusinessRecord, signal: ICPSignal) -> EnrichedLead:
        """
        Create the EnrichedLead for a raw record, or return the existing one.
        """
        existing = self.get_for_raw(raw.id)
        if existing:
            logger.debug(f"Raw record {raw.id} already enriched as {existing.id}")
            return existing

        result = await self.gather(raw)
        lead = self._build_lead(raw, signal, result)

        self.db.add(lead)
        try:
            if raw.status in ("new", "processed"):
                raw.status = "enriched"
            self.db.commit()
        except IntegrityError:
            # Another worker enriched the same record first
            self.db.rollback()
            existing = self.get_for_raw(raw.id)
            if existing is None:
                raise
            logger.info(f"Concurrent enrichment of {raw.id} collapsed onto lead {existing.id}")
            return existing

        logger.info(
            f"✅ Enriched {lead.business_name}: score={lead.lead_score} "
            f"grade={lead.lead_grade} confidence={lead.enrichment_confidence}"
        )
        return lead

    def _build_lead(self, raw: RawBusinessRecord, signal: ICPSignal, result: EnrichmentResult) -> EnrichedLead:
        data = result.enriched_data
        region = normalization_service.phone_region(raw.state)

        phone = raw.phone or normalization_service.normalize_phone(data.get("phone"), region)
        owner = normalization_service.split_owner_name(data.get("owner_name"))

        categories = []
        for category in [raw.category] + data.get("categories", []):
            if category and category.lower() not in categories:
                categories.append(category.lower())

        lead_score, components = self.policy.score(
            icp_score=signal.icp_score,
            confidence=result.confidence,
            review_count=data.get("review_count"),
            rating=data.get("rating"),
            years_in_business=data.get("years_in_business")
        )
        logger.debug(f"Lead score components for {raw.id}: {components}")

        return EnrichedLead(
            raw_business_id=raw.id,
            icp_signal_id=signal.id,
            business_name=raw.name,
            category=raw.category,
            categories=categories,
            address=raw.address,
            city=raw.city,
            state=raw.state,
            postal_code=raw.postal_code,
            owner_name=data.get("owner_name"),
            owner_first_name=owner["first_name"],
            owner_last_name=owner["last_name"],
            email=raw.email or data.get("email"),
            phone=phone,
            phone_valid=normalization_service.is_valid_phone(phone, region),
            website=raw.website or normalization_service.normalize_url(data.get("website")),
            facebook_url=raw.facebook_url or data.get("facebook_url"),
            instagram_url=raw.instagram_url or data.get("instagram_url"),
            review_count=data.get("review_count"),
            rating=data.get("rating"),
            years_in_business=data.get("years_in_business"),
            enrichment_sources=result.providers_used,
            enrichment_confidence=result.confidence,
            icp_score=signal.icp_score,
            lead_score=lead_score,
            lead_grade=self.policy.grade(lead_score),
            score_version=self.policy.version,
            status="enriched",
            enriched_at=self.clock(),
            updated_at=self.clock()
        )

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def _transition(self, lead: EnrichedLead, to_status: str, now: datetime):
        if to_status not in LEAD_TRANSITIONS[lead.status]:
            raise InvalidLeadTransition(lead.status, to_status)
        logger.info(f"Lead {lead.id}: {lead.status} -> {to_status}")
        lead.status = to_status
        lead.updated_at = now

    @staticmethod
    def has_contact_channel(lead: EnrichedLead) -> bool:
        return bool(lead.phone or lead.email or lead.website or lead.facebook_url or lead.instagram_url)

    @staticmethod
    def has_postal_address(lead: EnrichedLead) -> bool:
        return bool(lead.address and (lead.postal_code or (lead.city and lead.state)))

    def validate(self, lead: EnrichedLead) -> EnrichedLead:
        """
        enriched -> validated, or rejected when the lead is unusable.

        A lead needs a name and some way to reach or find the business. A
        postal address alone is enough: the published profile is how the
        owner gets in touch.
        """
        problems = []
        if not lead.business_name:
            problems.append("missing business name")
        if not (self.has_contact_channel(lead) or self.has_postal_address(lead)):
            problems.append("no contact channel or postal address")

        if problems:
            return self.reject(lead, "; ".join(problems))

        now = self.clock()
        self._transition(lead, "validated", now)
        lead.validated_at = now
        self.db.commit()
        return lead

    def is_publishable(self, lead: EnrichedLead) -> bool:
        return lead.lead_grade in settings.PUBLISHABLE_GRADES

    def mark_ready(self, lead: EnrichedLead) -> EnrichedLead:
        """validated -> ready; only qualifying grades."""
        if not self.is_publishable(lead):
            raise LeadNotPublishable(f"Lead {lead.id} grade {lead.lead_grade} does not qualify")

        now = self.clock()
        self._transition(lead, "ready", now)
        lead.ready_at = now
        self.db.commit()
        return lead

    def reject(self, lead: EnrichedLead, reason: str) -> EnrichedLead:
        """Terminal rejection; a reason is mandatory."""
        if not reason:
            raise ValueError("A rejection reason is required")

        now = self.clock()
        self._transition(lead, "rejected", now)
        lead.rejection_reason = reason
        lead.rejected_at = now

        raw = self.db.get(RawBusinessRecord, lead.raw_business_id)
        if raw is not None:
            raw.status = "rejected"
        self.db.commit()

        logger.warning(f"❌ Rejected lead {lead.id} ({lead.business_name}): {reason}")
        return lead
