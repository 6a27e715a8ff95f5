"""
Pipeline error taxonomy.

Source errors drive the work-item state machine (retry, fail, defer).
Ingestion and publish errors are isolated per record by the batch loops.
"""

from typing import Any, Dict, List, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


# ============================================================================
# EXTERNAL SOURCE ERRORS
# ============================================================================

class TransientSourceError(PipelineError):
    """Network failure, timeout or 5xx - retried with backoff."""


class PermanentSourceError(PipelineError):
    """Malformed target or 4xx - failed without auto-retry, flagged for review."""


class RateLimitExceeded(PipelineError):
    """
    Source or local limiter refused the request.
    
    Not a failure: the caller defers the work for `retry_after` seconds.
    """
    
    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


# ============================================================================
# INGESTION
# ============================================================================

class DataValidationError(PipelineError):
    """Payload rejected before a RawBusinessRecord is created."""
    
    def __init__(self, errors: List[Dict], quarantine_id: Optional[Any] = None):
        super().__init__(f"{len(errors)} validation error(s)")
        self.errors = errors
        self.quarantine_id = quarantine_id


# ============================================================================
# WORK QUEUE
# ============================================================================

class DuplicateWorkItem(PipelineError):
    """Enqueue hit an item that is already in flight. Benign."""
    
    def __init__(self, item_id: Any, status: str):
        super().__init__(f"Work item {item_id} already {status}")
        self.item_id = item_id
        self.status = status


class InvalidTransition(PipelineError):
    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Illegal transition {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class RetryNotAllowed(InvalidTransition):
    """failed -> queued refused: retries exhausted, under review, or not due yet."""

    def __init__(self, item_id: Any, reason: str):
        super().__init__("failed", "queued")
        self.args = (f"Work item {item_id} cannot be retried: {reason}",)
        self.item_id = item_id
        self.reason = reason


class StaleAttemptError(PipelineError):
    """Completion report from an attempt that has been superseded."""
    
    def __init__(self, item_id: Any, attempt: int):
        super().__init__(f"Stale report for work item {item_id} attempt {attempt}")
        self.item_id = item_id
        self.attempt = attempt


# ============================================================================
# LEADS & PROFILES
# ============================================================================

class InvalidLeadTransition(InvalidTransition):
    pass


class LeadNotPublishable(PipelineError):
    pass


class SlugCollision(PipelineError):
    """Raised and handled inside the publisher only."""


class ProfileAlreadyClaimed(PipelineError):
    pass


class UnknownPolicyVersion(PipelineError):
    pass
