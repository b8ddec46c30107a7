"""
Referral API endpoints.

Referral registration, status nudges, explicit amount corrections and the
full status/financial history. visited and paid cannot be set here; they are
reached only by approving a clinic report.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from core.database import get_db
from models import ReferralStatus
from services.referral_service import ReferralService

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateReferralRequest(BaseModel):
    agent_id: int
    patient_full_name: str = Field(..., min_length=1, max_length=255)
    clinic_id: Optional[int] = None
    clinic_name: Optional[str] = Field(None, max_length=255)
    patient_birthdate: Optional[date] = None
    patient_phone: Optional[str] = None
    patient_email: Optional[str] = Field(None, max_length=320)
    notes: Optional[str] = None


class ReferralResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    agent_id: int
    clinic_id: Optional[int] = None
    clinic_name: Optional[str] = None
    patient_full_name: str
    patient_birthdate: Optional[date] = None
    patient_phone: Optional[str] = None
    patient_email: Optional[str] = None
    notes: Optional[str] = None
    status: ReferralStatus
    treatment_amount: Optional[int] = None
    commission_amount: Optional[int] = None
    commission_rate: Optional[Decimal] = None
    linked_report_id: Optional[int] = None
    settled_at: Optional[datetime] = None
    created_at: datetime


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    from_status: Optional[ReferralStatus] = None
    to_status: ReferralStatus
    actor: str
    note: Optional[str] = None
    treatment_amount: Optional[int] = None
    commission_amount: Optional[int] = None
    created_at: datetime


class ReferralDetailResponse(ReferralResponse):
    history: List[HistoryEntryResponse] = []


class StatusChangeRequest(BaseModel):
    status: ReferralStatus
    actor: str = Field(..., min_length=1, max_length=100)
    note: Optional[str] = None


class AmountCorrectionRequest(BaseModel):
    treatment_amount: int = Field(..., ge=0, description="Kopecks")
    reason: str = Field(..., min_length=1)
    actor: str = Field(..., min_length=1, max_length=100)


@router.post("", response_model=ReferralResponse, status_code=status.HTTP_201_CREATED)
def create_referral(request: CreateReferralRequest, db: Session = Depends(get_db)):
    return ReferralService.create_referral(db, **request.model_dump())


@router.get("", response_model=List[ReferralResponse])
def list_referrals(
    agent_id: Optional[int] = Query(None),
    clinic_id: Optional[int] = Query(None),
    status: Optional[ReferralStatus] = Query(None),
    db: Session = Depends(get_db),
):
    return ReferralService.list_referrals(db, agent_id=agent_id, clinic_id=clinic_id, status=status)


@router.get("/{referral_id}", response_model=ReferralDetailResponse)
def get_referral(referral_id: int, db: Session = Depends(get_db)):
    """Referral with its full status and financial history."""
    referral = ReferralService.get_referral(db, referral_id)
    history = ReferralService.get_history(db, referral_id)
    response = ReferralDetailResponse.model_validate(referral)
    response.history = [HistoryEntryResponse.model_validate(entry) for entry in history]
    return response


@router.post("/{referral_id}/status", response_model=ReferralResponse)
def change_referral_status(
    referral_id: int,
    request: StatusChangeRequest,
    db: Session = Depends(get_db),
):
    return ReferralService.transition_status(
        db, referral_id, request.status, actor=request.actor, note=request.note
    )


@router.post("/{referral_id}/treatment-amount", response_model=ReferralResponse)
def correct_treatment_amount(
    referral_id: int,
    request: AmountCorrectionRequest,
    db: Session = Depends(get_db),
):
    """Correct the confirmed amount of a settled referral; the commission follows at the stored rate."""
    return ReferralService.correct_treatment_amount(
        db, referral_id, request.treatment_amount, reason=request.reason, actor=request.actor
    )
