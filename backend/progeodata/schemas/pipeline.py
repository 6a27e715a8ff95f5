"""Response schemas for the operational read-only views."""

from pydantic import BaseModel, ConfigDict
from typing import Optional, List, Dict
from datetime import datetime


class Alert(BaseModel):
    type: str
    message: str
    severity: str  # low, medium, high, critical


class QueueHealth(BaseModel):
    """Queue-wide counters and alerts"""
    generated_at: datetime
    by_status: Dict[str, int]
    by_source_type: Dict[str, Dict[str, int]]
    retry_backlog: int
    awaiting_review: int
    retries_exhausted: int
    oldest_queued_age_seconds: Optional[float]
    attempts_last_hour: int
    failures_last_hour: int
    error_rate_last_hour: float
    alerts: List[Alert] = []


class WindowUsage(BaseModel):
    used: int
    limit: Optional[int]
    resets_at: Optional[datetime]


class RateLimitStatus(BaseModel):
    source_type: str
    source_key: str
    windows: Dict[str, WindowUsage]
    is_throttled: bool
    throttled_until: Optional[datetime]
    total_requests: int
    total_failures: int
    consecutive_failures: int
    last_request_at: Optional[datetime]


class ScheduleStatus(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    name: str
    enabled: bool
    strategy: str
    zip_limit_per_run: int
    next_run_at: Optional[datetime]
    last_run_at: Optional[datetime]
    last_run_status: Optional[str]
    last_run_enqueued: Optional[int]
    last_error: Optional[str]
    total_runs: int
    overdue: bool = False


class ClaimRequest(BaseModel):
    claimed_by: str
