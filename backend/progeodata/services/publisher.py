# backend/progeodata/services/publisher.py
"""
Ghost Profile Publisher

Promotes `ready` leads into public, claimable profiles.

- One profile per lead (unique FK); re-publishing returns the existing row
- Slug = slugify(business_name); collisions resolve to name-city, then
  name-city-2, name-city-3... Once written a slug never changes
- Profile, SEO metadata and schema.org block are committed together or not at all
"""

from typing import Dict, Any, Iterator, List, Optional
import logging
import re
import unicodedata

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from progeodata.config import settings
from progeodata.exceptions import LeadNotPublishable, SlugCollision, ProfileAlreadyClaimed
from progeodata.models import EnrichedLead, GhostProfile
from progeodata.utils import Clock, utcnow

logger = logging.getLogger(__name__)

MAX_SLUG_LENGTH = 120
MAX_SLUG_CANDIDATES = 50


def slugify(name: Optional[str]) -> str:
    """Convert business name to URL-safe slug."""
    if not name:
        return "business"
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    # Joe's -> joes
    ascii_name = re.sub(r"['’]", "", ascii_name.lower())
    slug = re.sub(r'[^a-z0-9]+', '-', ascii_name)
    return slug.strip('-')[:MAX_SLUG_LENGTH].strip('-') or "business"


def slug_candidates(business_name: str, city: Optional[str]) -> Iterator[str]:
    """Deterministic slug sequence for one business."""
    base = slugify(business_name)
    yield base

    if city:
        with_city = f"{base}-{slugify(city)}"
        yield with_city
        stem = with_city
    else:
        stem = base

    for n in range(2, MAX_SLUG_CANDIDATES + 1):
        yield f"{stem}-{n}"


class GhostProfilePublisher:
    """Publishes and claims ghost profiles."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def get_for_lead(self, lead_id) -> Optional[GhostProfile]:
        return self.db.query(GhostProfile).filter(GhostProfile.enriched_lead_id == lead_id).first()

    def get_by_slug(self, slug: str) -> Optional[GhostProfile]:
        return self.db.query(GhostProfile).filter(GhostProfile.slug == slug).populate_existing().first()

    # ========================================================================
    # PUBLISH
    # ========================================================================

    def publish(self, lead: EnrichedLead) -> GhostProfile:
        """Create the lead's ghost profile, or return the one it already has."""
        if lead.status != "ready":
            raise LeadNotPublishable(f"Lead {lead.id} is {lead.status}, not ready")
        if lead.lead_grade not in settings.PUBLISHABLE_GRADES:
            raise LeadNotPublishable(f"Lead {lead.id} grade {lead.lead_grade} does not qualify")

        existing = self.get_for_lead(lead.id)
        if existing:
            logger.debug(f"Lead {lead.id} already published as {existing.slug}")
            return existing

        for slug in slug_candidates(lead.business_name, lead.city):
            if self.get_by_slug(slug) is not None:
                continue
            try:
                return self._insert(lead, slug)
            except SlugCollision:
                # Lost the slug to a concurrent publish; the lead itself may
                # have been published by the winner
                existing = self.get_for_lead(lead.id)
                if existing:
                    return existing

        raise LeadNotPublishable(f"No free slug for '{lead.business_name}' after {MAX_SLUG_CANDIDATES} candidates")

    def _insert(self, lead: EnrichedLead, slug: str) -> GhostProfile:
        now = self.clock()
        profile = GhostProfile(
            enriched_lead_id=lead.id,
            slug=slug,
            business_name=lead.business_name,
            category=lead.category,
            city=lead.city,
            state=lead.state,
            postal_code=lead.postal_code,
            phone=lead.phone,
            published_at=now,
            is_claimed=False,
            **self.build_seo(lead, slug)
        )
        self.db.add(profile)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise SlugCollision(slug) from e

        logger.info(f"🌐 Published ghost profile '{slug}' for {lead.business_name}")
        return profile

    def build_seo(self, lead: EnrichedLead, slug: str) -> Dict[str, Any]:
        """SEO metadata and schema.org LocalBusiness block."""
        category = (lead.category or "local business").title()
        location = ", ".join(part for part in (lead.city, lead.state) if part)
        canonical_url = f"{settings.PUBLIC_BASE_URL.rstrip('/')}/pro/{slug}"

        title = f"{lead.business_name} | {category}"
        if location:
            title = f"{title} in {location}"

        description = f"{lead.business_name} is a {category.lower()}"
        if location:
            description += f" serving {location}"
        description += ". View contact details, service area and reviews, or claim this free listing."

        keywords: List[str] = [lead.business_name.lower(), category.lower()]
        if lead.city:
            keywords.append(f"{category.lower()} {lead.city.lower()}")
        for extra in lead.categories or []:
            if extra not in keywords:
                keywords.append(extra)

        schema = {
            "@context": "https://schema.org",
            "@type": "LocalBusiness",
            "name": lead.business_name,
            "url": canonical_url,
            "address": {
                "@type": "PostalAddress",
                "streetAddress": lead.address,
                "addressLocality": lead.city,
                "addressRegion": lead.state,
                "postalCode": lead.postal_code,
                "addressCountry": "US",
            },
        }
        if lead.phone:
            schema["telephone"] = lead.phone
        if lead.email:
            schema["email"] = lead.email
        same_as = [url for url in (lead.website, lead.facebook_url, lead.instagram_url) if url]
        if same_as:
            schema["sameAs"] = same_as
        if lead.rating is not None and lead.review_count:
            schema["aggregateRating"] = {
                "@type": "AggregateRating",
                "ratingValue": lead.rating,
                "reviewCount": lead.review_count,
            }

        return {
            "seo_title": title[:255],
            "seo_description": description,
            "seo_keywords": keywords,
            "canonical_url": canonical_url,
            "schema_org": schema,
        }

    # ========================================================================
    # CLAIM
    # ========================================================================

    def claim(self, slug: str, claimed_by: str) -> GhostProfile:
        """One-time, irreversible claim (claimed_at IS NULL -> set)."""
        profile = self.get_by_slug(slug)
        if profile is None:
            raise ValueError(f"Ghost profile '{slug}' not found")

        now = self.clock()
        result = self.db.execute(
            update(GhostProfile)
            .execution_options(synchronize_session=False)
            .where(GhostProfile.id == profile.id, GhostProfile.claimed_at.is_(None))
            .values(is_claimed=True, claimed_at=now, claimed_by=claimed_by)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise ProfileAlreadyClaimed(f"Ghost profile '{slug}' is already claimed")

        self.db.commit()
        logger.info(f"🏷️ Ghost profile '{slug}' claimed by {claimed_by}")
        return self.get_by_slug(slug)
