"""Pydantic schemas for the pipeline boundary and operational views."""

from progeodata.schemas.business import RawBusinessPayload, PartialEnrichment, FetchResult
from progeodata.schemas.pipeline import (
    Alert,
    QueueHealth,
    WindowUsage,
    RateLimitStatus,
    ScheduleStatus,
    ClaimRequest,
)
