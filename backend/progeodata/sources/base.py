"""
Collaborator interfaces for external sources and enrichment providers.
Every new source or provider must implement one of these.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

from progeodata.schemas.business import FetchResult, PartialEnrichment


@dataclass(frozen=True)
class FetchTarget:
    """What one work item asks a source for."""
    zip_code: str
    state: str
    source_type: str
    profession: str = "general"

    @classmethod
    def from_item(cls, item) -> "FetchTarget":
        return cls(
            zip_code=item.zip_code,
            state=item.state,
            source_type=item.source_type,
            profession=item.profession,
        )

    def as_variables(self) -> Dict[str, str]:
        return {
            "zip_code": self.zip_code,
            "state": self.state,
            "source_type": self.source_type,
            "profession": self.profession,
        }


class SourceAdapter(ABC):
    """
    Abstract base class for business listing sources.

    fetch() returns a FetchResult, or raises TransientSourceError,
    PermanentSourceError or RateLimitExceeded.
    """

    source_type: str = "unknown"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Args:
            config: Source config (endpoints, credentials, field mappings)
        """
        self.config = config or {}

    @abstractmethod
    async def fetch(self, target: FetchTarget) -> FetchResult:
        """Fetch every business the source lists for one target."""
        pass

    def validate_config(self) -> List[str]:
        """
        Validate configuration, return list of errors.

        Returns:
            List of error messages (empty if valid)
        """
        return []


class EnrichmentProvider(ABC):
    """Third-party provider that augments a raw record."""

    name: str = "unknown"
    quality: float = 0.5

    @abstractmethod
    async def enrich_external(self, raw) -> Optional[PartialEnrichment]:
        """
        Return what the provider knows about the business, or None.

        May raise; the enrichment stage logs and skips failing providers.
        """
        pass
