"""
Clinic report review API endpoints.

Listing and statistics for the review queue, and the administrator actions
approve, reject, edit and relink. Also exposes "run ingestion now", which
calls the same operation as the scheduled job.
"""

import logging
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from api.dependencies import get_report_matcher, get_report_producer
from core.database import get_db
from models import ClinicReportStatus
from services.report_ingestion_service import ReportIngestionService, ReportProducer
from services.report_matcher import ReportMatcher
from services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

router = APIRouter()


# Request/Response Models
class ClinicReportResponse(BaseModel):
    """Clinic report as shown in the review queue."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    source_id: str
    clinic_id: Optional[int] = None
    email_from: str
    email_subject: Optional[str] = None
    email_received_at: datetime
    patient_name: Optional[str] = None
    clinic_name: Optional[str] = None
    visit_date: Optional[date] = None
    treatment_amount: Optional[int] = None
    services: List[str] = []
    extraction_confidence: int
    match_confidence: int
    status: ClinicReportStatus
    linked_referral_id: Optional[int] = None
    suggested_referral_id: Optional[int] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    reviewer_notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class ClinicReportDetailResponse(ClinicReportResponse):
    """Clinic report including the raw email body."""
    email_body_raw: Optional[str] = None


class ApproveReportRequest(BaseModel):
    reviewer: str = Field(..., min_length=1, max_length=100)
    referral_id: Optional[int] = Field(None, description="Defaults to the report's linked referral")
    treatment_amount: Optional[int] = Field(None, description="Kopecks; defaults to the report's amount")
    notes: Optional[str] = None


class ApprovalResponse(BaseModel):
    report_id: int
    referral_id: int
    treatment_amount: int
    commission_rate: Decimal
    commission_amount: int
    net_amount: int
    payment_id: Optional[int] = None
    payout_error: Optional[str] = None


class RejectReportRequest(BaseModel):
    reviewer: str = Field(..., min_length=1, max_length=100)
    reason: str = Field(..., min_length=1)


class EditReportRequest(BaseModel):
    """Only the fields sent are changed; null clears a field."""
    editor: str = Field(..., min_length=1, max_length=100)
    rematch: bool = False
    patient_name: Optional[str] = None
    clinic_name: Optional[str] = None
    visit_date: Optional[date] = None
    treatment_amount: Optional[int] = Field(None, ge=0)
    services: Optional[List[str]] = None
    reviewer_notes: Optional[str] = None


class RelinkReportRequest(BaseModel):
    editor: str = Field(..., min_length=1, max_length=100)
    referral_id: Optional[int] = None


class IngestionRunResponse(BaseModel):
    processed: int
    created: int
    skipped: int
    errors: int
    auto_matched: int
    report_ids: List[int]


# Endpoints
@router.get("", response_model=List[ClinicReportResponse])
def list_clinic_reports(
    status: Optional[ClinicReportStatus] = Query(None),
    clinic_id: Optional[int] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """List clinic reports, newest first, optionally filtered by status or clinic."""
    return SettlementService.list_reports(db, status=status, clinic_id=clinic_id, limit=limit)


@router.get("/stats", response_model=Dict[str, int])
def clinic_report_stats(db: Session = Depends(get_db)):
    """Number of reports per status."""
    return SettlementService.report_stats(db)


@router.post("/ingestion-runs", response_model=IngestionRunResponse)
def run_ingestion_now(
    db: Session = Depends(get_db),
    producer: ReportProducer = Depends(get_report_producer),
    matcher: ReportMatcher = Depends(get_report_matcher),
):
    """Run one ingestion batch immediately. Safe to call while the scheduled job runs."""
    result = ReportIngestionService.run_ingestion(db, producer, matcher)
    return result.to_dict()


@router.get("/{report_id}", response_model=ClinicReportDetailResponse)
def get_clinic_report(report_id: int, db: Session = Depends(get_db)):
    return SettlementService.get_report(db, report_id)


@router.post("/{report_id}/approve", response_model=ApprovalResponse)
def approve_clinic_report(
    report_id: int,
    request: ApproveReportRequest,
    db: Session = Depends(get_db),
):
    """
    Approve a report and settle its referral.

    The referral is settled even when creating the payout fails; payout_error
    then carries the reason and the payout can be created again from the
    payments API.
    """
    result = SettlementService.approve_report(
        db,
        report_id,
        reviewer=request.reviewer,
        referral_id=request.referral_id,
        treatment_amount=request.treatment_amount,
        notes=request.notes,
    )
    return ApprovalResponse(**asdict(result))


@router.post("/{report_id}/reject", response_model=ClinicReportResponse)
def reject_clinic_report(
    report_id: int,
    request: RejectReportRequest,
    db: Session = Depends(get_db),
):
    return SettlementService.reject_report(db, report_id, request.reviewer, request.reason)


@router.patch("/{report_id}", response_model=ClinicReportResponse)
def edit_clinic_report(
    report_id: int,
    request: EditReportRequest,
    db: Session = Depends(get_db),
    matcher: ReportMatcher = Depends(get_report_matcher),
):
    """Correct extracted fields before approval."""
    updates = request.model_dump(exclude_unset=True, exclude={"editor", "rematch"})
    return SettlementService.edit_report(
        db, report_id, updates, request.editor, rematch=request.rematch, matcher=matcher
    )


@router.post("/{report_id}/relink", response_model=ClinicReportResponse)
def relink_clinic_report(
    report_id: int,
    request: RelinkReportRequest,
    db: Session = Depends(get_db),
):
    return SettlementService.relink_report(db, report_id, request.referral_id, request.editor)
