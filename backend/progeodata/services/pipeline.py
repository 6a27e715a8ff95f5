# backend/progeodata/services/pipeline.py
"""
Lead Pipeline - one-directional promotion of raw records

Flow per raw record:
1. Detect ICP signal (reused when input is unchanged)
2. Enrich into an EnrichedLead (one per raw record)
3. Validate -> ready when the grade qualifies
4. Publish ghost profile

A failing record is logged and skipped; it never aborts the batch.
"""

from typing import Optional, Dict, Any, List
import logging
import time

from sqlalchemy.orm import Session

from progeodata.config import settings
from progeodata.models import RawBusinessRecord
from progeodata.services.enrichment_service import LeadEnricher
from progeodata.services.icp_detector import ICPSignalDetector
from progeodata.services.publisher import GhostProfilePublisher
from progeodata.sources.base import EnrichmentProvider
from progeodata.utils import Clock, utcnow

logger = logging.getLogger(__name__)


class LeadPipeline:
    """
    Orchestrates detector -> enrichment -> publisher for raw records
    """

    def __init__(
        self,
        db: Session,
        providers: Optional[List[EnrichmentProvider]] = None,
        clock: Clock = utcnow,
        detector_version: Optional[str] = None
    ):
        self.db = db
        self.detector_version = detector_version
        self.detector = ICPSignalDetector(db, clock=clock)
        self.enricher = LeadEnricher(db, providers=providers, clock=clock)
        self.publisher = GhostProfilePublisher(db, clock=clock)

    async def process_record(self, raw: RawBusinessRecord) -> Dict[str, Any]:
        """Run every stage the record qualifies for."""
        start = time.monotonic()
        result: Dict[str, Any] = {"success": True, "raw_id": str(raw.id), "stage": "detected"}

        try:
            signal = self.detector.score(raw, self.detector_version)
            result.update(
                signal_id=str(signal.id),
                icp_score=signal.icp_score,
                icp_category=signal.icp_category
            )

            if signal.icp_category not in settings.ENRICH_ICP_CATEGORIES:
                logger.info(f"Skipping enrichment for {raw.name}: ICP {signal.icp_category}")
                return result

            lead = await self.enricher.enrich(raw, signal)
            result.update(stage="enriched", lead_id=str(lead.id), lead_grade=lead.lead_grade)

            if lead.status == "enriched":
                self.enricher.validate(lead)

            if lead.status == "validated" and self.enricher.is_publishable(lead):
                self.enricher.mark_ready(lead)

            if lead.status == "ready":
                profile = self.publisher.publish(lead)
                result.update(stage="published", profile_slug=profile.slug)
            elif lead.status == "rejected":
                result.update(stage="rejected", rejection_reason=lead.rejection_reason)

            result["lead_status"] = lead.status
            return result

        except Exception as e:
            self.db.rollback()
            logger.error(f"Pipeline error for raw record {raw.id}: {e}", exc_info=True)
            result.update(success=False, error=str(e))
            return result

        finally:
            result["processing_time_ms"] = int((time.monotonic() - start) * 1000)

    async def process_batch(self, raw_ids: List[Any]) -> Dict[str, Any]:
        """Process many raw records, isolating failures per record."""
        summary = {"processed": 0, "published": 0, "rejected": 0, "failed": 0, "results": []}

        for raw_id in raw_ids:
            raw = self.db.get(RawBusinessRecord, raw_id)
            if raw is None:
                logger.warning(f"Raw record {raw_id} not found, skipping")
                summary["failed"] += 1
                continue

            result = await self.process_record(raw)
            summary["results"].append(result)

            if not result["success"]:
                summary["failed"] += 1
                continue
            summary["processed"] += 1
            if result["stage"] == "published":
                summary["published"] += 1
            elif result["stage"] == "rejected":
                summary["rejected"] += 1

        logger.info(
            f"Batch done: {summary['processed']} processed, {summary['published']} published, "
            f"{summary['rejected']} rejected, {summary['failed']} failed"
        )
        return summary
