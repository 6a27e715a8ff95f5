# backend/progeodata/services/ingestion.py
"""
Ingestion Store

Deduplicated landing zone for scraped businesses.

- Identity is (source, source_id); re-scrapes update the row in place
- Payloads that fail validation go to quarantine, never into the store
- Every stored row carries a content hash of its normalized fields
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple
import logging

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from progeodata.exceptions import DataValidationError
from progeodata.models import RawBusinessRecord, QuarantinedRecord
from progeodata.schemas.business import RawBusinessPayload
from progeodata.services.normalization import NormalizationService, normalization_service
from progeodata.utils import Clock, utcnow, content_hash

logger = logging.getLogger(__name__)

# Columns copied from the validated payload onto RawBusinessRecord
RECORD_FIELDS = (
    "source_url", "name", "category", "address", "city", "state", "postal_code",
    "phone", "email", "website", "facebook_url", "instagram_url",
    "latitude", "longitude", "geocode_confidence",
)

CRITICAL_FIELDS = {"source_id", "name"}


@dataclass
class IngestSummary:
    """Outcome of ingesting one fetch result"""
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    quarantined: int = 0
    records: List[RawBusinessRecord] = field(default_factory=list)

    @property
    def stored(self) -> int:
        return self.created + self.updated + self.unchanged


class IngestionStore:
    """Validates, normalizes and upserts raw business records."""

    def __init__(
        self,
        db: Session,
        clock: Clock = utcnow,
        normalizer: NormalizationService = normalization_service
    ):
        self.db = db
        self.clock = clock
        self.normalizer = normalizer

    # ========================================================================
    # VALIDATION / QUARANTINE
    # ========================================================================

    def validate(self, source: str, payload: Dict[str, Any]) -> RawBusinessPayload:
        """Validate one payload; quarantine and raise DataValidationError on failure."""
        try:
            return RawBusinessPayload.model_validate(payload)
        except ValidationError as e:
            errors = [
                {
                    "field": ".".join(str(part) for part in err["loc"]),
                    "message": err["msg"],
                    "type": err["type"],
                }
                for err in e.errors()
            ]
            entry = self.quarantine(source, payload, errors)
            raise DataValidationError(errors, quarantine_id=entry.id) from e

    def quarantine(
        self,
        source: str,
        payload: Dict[str, Any],
        errors: List[Dict[str, Any]]
    ) -> QuarantinedRecord:
        """Store a rejected payload for manual review."""
        severity = "critical" if any(e["field"] in CRITICAL_FIELDS for e in errors) else "major"
        source_id = payload.get("source_id") if isinstance(payload, dict) else None

        entry = QuarantinedRecord(
            source=source,
            source_id=str(source_id) if source_id is not None else None,
            attempted_data=payload,
            validation_errors=errors,
            error_severity=severity,
            needs_review=True,
            quarantined_at=self.clock()
        )
        self.db.add(entry)
        self.db.commit()

        logger.warning(
            f"⚠️ Quarantined {source} record {source_id!r}: "
            f"{', '.join(e['field'] for e in errors)} ({severity})"
        )
        return entry

    # ========================================================================
    # UPSERT
    # ========================================================================

    def upsert(self, source: str, payload: Dict[str, Any]) -> Tuple[RawBusinessRecord, str]:
        """
        Insert or update the record for (source, source_id).

        Returns (record, action) where action is created / updated / unchanged.
        Raises DataValidationError (after quarantining) for invalid payloads.
        """
        validated = self.validate(source, payload)
        values = self._build_values(validated)

        record = self._find(source, validated.source_id)
        if record is None:
            record = RawBusinessRecord(source=source, source_id=validated.source_id, **values)
            record.status = "new"
            record.scrape_count = 1
            record.created_at = values["last_updated"]
            self.db.add(record)
            try:
                self.db.commit()
                logger.info(f"Stored new {source} business {validated.source_id}: {record.name}")
                return record, "created"
            except IntegrityError:
                # Concurrent first sighting; fall through to update
                self.db.rollback()
                record = self._find(source, validated.source_id)

        return self._apply_update(record, values)

    def upsert_many(self, source: str, payloads: List[Dict[str, Any]]) -> IngestSummary:
        """Ingest a batch; one bad payload never blocks the rest."""
        summary = IngestSummary()
        for payload in payloads:
            try:
                record, action = self.upsert(source, payload)
            except DataValidationError:
                summary.quarantined += 1
                continue
            setattr(summary, action, getattr(summary, action) + 1)
            summary.records.append(record)

        logger.info(
            f"Ingested {source}: {summary.created} new, {summary.updated} updated, "
            f"{summary.unchanged} unchanged, {summary.quarantined} quarantined"
        )
        return summary

    def get(self, source: str, source_id: str) -> Optional[RawBusinessRecord]:
        return self._find(source, source_id)

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _find(self, source: str, source_id: str) -> Optional[RawBusinessRecord]:
        return self.db.query(RawBusinessRecord).filter(
            RawBusinessRecord.source == source,
            RawBusinessRecord.source_id == source_id
        ).first()

    def _build_values(self, validated: RawBusinessPayload) -> Dict[str, Any]:
        modelled = {name: getattr(validated, name) for name in RECORD_FIELDS}
        normalized = self.normalizer.normalize_business(modelled)
        raw_data = validated.extra

        values = dict(normalized)
        values["raw_data"] = raw_data
        values["content_hash"] = content_hash({"fields": normalized, "raw_data": raw_data})
        values["last_updated"] = self.clock()
        return values

    def _apply_update(self, record: RawBusinessRecord, values: Dict[str, Any]) -> Tuple[RawBusinessRecord, str]:
        changed = record.content_hash != values["content_hash"]

        if changed:
            for name, value in values.items():
                setattr(record, name, value)
        else:
            record.last_updated = values["last_updated"]
        record.scrape_count = (record.scrape_count or 0) + 1
        self.db.commit()

        action = "updated" if changed else "unchanged"
        logger.debug(f"Re-scraped {record.source} business {record.source_id} ({action})")
        return record, action
