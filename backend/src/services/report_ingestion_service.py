"""
Report ingestion: turns producer candidates into routed ClinicReport rows.

Ingestion is one idempotent operation shared by the scheduled job and the
administrator's "run now" trigger. The report's source_id is unique, so a
candidate delivered twice, or picked up by two concurrent runs, is stored once.
Each candidate is committed on its own; one bad candidate never aborts a batch.
"""

import logging
from datetime import date, datetime
from typing import Any, List, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import INGESTION_BATCH_SIZE, REPORT_PRODUCER_URL
from core.constants import RAW_BODY_MAX_CHARS
from models import ClinicReport, ClinicReportStatus
from services.report_matcher import ReportMatcher, resolve_clinic
from shared_types import IngestionResult
from utils.datetime_utils import ensure_moscow, parse_visit_date_optional

logger = logging.getLogger(__name__)


class ReportCandidate(BaseModel):
    """Structured report as delivered by the extraction step."""
    source_id: str = Field(..., min_length=1, max_length=255)
    sender: str = Field(..., min_length=1)
    subject: Optional[str] = None
    received_at: datetime
    raw_body: Optional[str] = None
    patient_name: Optional[str] = None
    clinic_name: Optional[str] = None
    visit_date: Optional[date] = None
    treatment_amount: Optional[int] = Field(default=None, ge=0, description="Kopecks")
    services: List[str] = Field(default_factory=list)
    extraction_confidence: int = Field(default=0, ge=0, le=100)

    @field_validator("visit_date", mode="before")
    @classmethod
    def parse_clinic_date(cls, v: Any) -> Any:
        # Clinics write DD.MM.YYYY; anything unparseable becomes "unknown"
        if isinstance(v, str):
            return parse_visit_date_optional(v)
        return v

    @field_validator("patient_name", "clinic_name", "subject", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class ReportProducer(Protocol):
    """Source of extracted report candidates."""

    def fetch(self, limit: int) -> List[ReportCandidate]:
        ...


class HttpReportProducer:
    """
    Pulls candidates from the extraction service over HTTP.

    GET {url}?limit=N must return a JSON list of candidate objects (or an
    object with an "items" list). Invalid items are logged and dropped.
    """

    def __init__(self, url: str = REPORT_PRODUCER_URL, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    def fetch(self, limit: int) -> List[ReportCandidate]:
        if not self.url:
            logger.info("Report producer URL not configured, skipping fetch")
            return []

        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            response = client.get(self.url, params={"limit": limit})
            response.raise_for_status()
            payload = response.json()
        finally:
            if self._client is None:
                client.close()

        items = payload.get("items", []) if isinstance(payload, dict) else payload
        candidates: List[ReportCandidate] = []
        for item in items[:limit]:
            try:
                candidates.append(ReportCandidate.model_validate(item))
            except PydanticValidationError as e:
                logger.warning(f"Dropping invalid report candidate {item.get('source_id') if isinstance(item, dict) else item!r}: {e}")
        return candidates


class ReportIngestionService:
    """Service for ingesting clinic reports."""

    @staticmethod
    def ingest_candidates(
        db: Session,
        candidates: Sequence[ReportCandidate],
        matcher: Optional[ReportMatcher] = None,
    ) -> IngestionResult:
        """
        Store and route a batch of candidates.

        Args:
            db: Database session
            candidates: Candidates from the producer
            matcher: Matcher with the routing policy to apply

        Returns:
            IngestionResult counters
        """
        matcher = matcher or ReportMatcher()
        result = IngestionResult()

        for candidate in candidates:
            result.processed += 1
            try:
                existing = db.scalar(
                    select(ClinicReport.id).where(ClinicReport.source_id == candidate.source_id)
                )
                if existing is not None:
                    logger.info(f"Skipping already ingested report source {candidate.source_id}")
                    result.skipped += 1
                    continue

                report = ReportIngestionService._store_candidate(db, candidate)
                decision = matcher.route_report(db, report)
                db.commit()

                result.created += 1
                result.report_ids.append(report.id)
                if decision.status == ClinicReportStatus.AUTO_MATCHED:
                    result.auto_matched += 1
            except IntegrityError:
                # A concurrent run stored the same source first
                db.rollback()
                logger.info(f"Report source {candidate.source_id} ingested concurrently, skipping")
                result.skipped += 1
            except Exception as e:
                db.rollback()
                logger.exception(f"Error ingesting report source {candidate.source_id}: {e}")
                result.errors += 1

        logger.info(
            f"Ingestion done: processed={result.processed}, created={result.created}, "
            f"skipped={result.skipped}, errors={result.errors}, auto_matched={result.auto_matched}"
        )
        return result

    @staticmethod
    def _store_candidate(db: Session, candidate: ReportCandidate) -> ClinicReport:
        clinic = resolve_clinic(db, candidate.sender, candidate.clinic_name)
        body = candidate.raw_body[:RAW_BODY_MAX_CHARS] if candidate.raw_body else None

        report = ClinicReport(
            source_id=candidate.source_id,
            clinic_id=clinic.id if clinic else None,
            email_from=candidate.sender,
            email_subject=candidate.subject,
            email_received_at=ensure_moscow(candidate.received_at),
            email_body_raw=body,
            patient_name=candidate.patient_name.strip() if candidate.patient_name else None,
            clinic_name=candidate.clinic_name or (clinic.name if clinic else None),
            visit_date=candidate.visit_date,
            treatment_amount=candidate.treatment_amount,
            services=list(candidate.services),
            extraction_confidence=candidate.extraction_confidence,
            status=ClinicReportStatus.PENDING_REVIEW,
        )
        db.add(report)
        db.flush()
        return report

    @staticmethod
    def run_ingestion(
        db: Session,
        producer: ReportProducer,
        matcher: Optional[ReportMatcher] = None,
        batch_size: int = INGESTION_BATCH_SIZE,
    ) -> IngestionResult:
        """
        Fetch one bounded batch from the producer and ingest it.

        A producer failure is logged and reported as one error; nothing is stored.
        """
        try:
            candidates = producer.fetch(batch_size)
        except (httpx.HTTPError, ValueError) as e:
            logger.exception(f"Report producer fetch failed: {e}")
            return IngestionResult(errors=1)
        return ReportIngestionService.ingest_candidates(db, candidates[:batch_size], matcher)
