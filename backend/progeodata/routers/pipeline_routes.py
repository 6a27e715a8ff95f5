"""
Pipeline Routes - read-only operational views + lead/profile access
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List
from uuid import UUID

from progeodata.database import get_db
from progeodata.exceptions import ProfileAlreadyClaimed
from progeodata.models import EnrichedLead
from progeodata.schemas.pipeline import QueueHealth, RateLimitStatus, ScheduleStatus, ClaimRequest
from progeodata.services import monitoring
from progeodata.services.publisher import GhostProfilePublisher

router = APIRouter(prefix="/api/v1/pipeline", tags=["Pipeline"])


# ============================================================================
# OPERATIONAL VIEWS
# ============================================================================

@router.get("/queue-health", response_model=QueueHealth)
def get_queue_health(db: Session = Depends(get_db)):
    return monitoring.queue_health(db)


@router.get("/rate-limits", response_model=List[RateLimitStatus])
def get_rate_limits(db: Session = Depends(get_db)):
    return monitoring.rate_limit_status(db)


@router.get("/schedules", response_model=List[ScheduleStatus])
def get_schedules(db: Session = Depends(get_db)):
    return monitoring.schedule_status(db)


# ============================================================================
# LEADS & PROFILES
# ============================================================================

@router.get("/leads/{lead_id}")
def get_lead(lead_id: UUID, db: Session = Depends(get_db)):
    lead = db.get(EnrichedLead, lead_id)
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead.to_dict()


@router.get("/profiles/{slug}")
def get_profile(slug: str, db: Session = Depends(get_db)):
    profile = GhostProfilePublisher(db).get_by_slug(slug)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile.to_dict()


@router.post("/profiles/{slug}/claim")
def claim_profile(slug: str, request: ClaimRequest, db: Session = Depends(get_db)):
    publisher = GhostProfilePublisher(db)
    if not publisher.get_by_slug(slug):
        raise HTTPException(status_code=404, detail="Profile not found")

    try:
        profile = publisher.claim(slug, request.claimed_by)
    except ProfileAlreadyClaimed as e:
        raise HTTPException(status_code=409, detail=str(e))

    return profile.to_dict()
