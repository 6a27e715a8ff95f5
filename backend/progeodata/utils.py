"""Small shared helpers."""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every pipeline column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def canonical_json(data: Any) -> str:
    """Stable JSON encoding used for hashing and byte-level comparisons."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(data: Any) -> str:
    """SHA256 of the canonical JSON form."""
    return hashlib.sha256(canonical_json(data).encode()).hexdigest()


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))
