"""
Payment API endpoints.

Listing payouts, manual (re)submission to the settlement provider, status
sync, and re-creating the payout of a settled referral after a failure.
Provider failures come back as a structured result, not an HTTP error, so the
administrator sees the provider's reason verbatim.
"""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from api.dependencies import get_payout_gateway
from core.database import get_db
from models import PaymentStatus, PayoutMethod
from services.payment_service import PaymentService
from services.payout_gateway import PayoutGateway

logger = logging.getLogger(__name__)

router = APIRouter()


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    agent_id: int
    referral_id: Optional[int] = None
    amount: int
    gross_amount: int
    tax_amount: int
    social_contributions: int
    status: PaymentStatus
    idempotency_key: Optional[str] = None
    payout_method: PayoutMethod
    payout_destination: Optional[str] = None
    provider_payment_id: Optional[str] = None
    provider_status_code: Optional[int] = None
    provider_status_text: Optional[str] = None
    submit_attempts: int
    last_error: Optional[str] = None
    last_error_ambiguous: bool
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class PayoutResultResponse(BaseModel):
    success: bool
    payment_id: int
    provider_payment_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    ambiguous: bool = False


class CreatePayoutResponse(BaseModel):
    referral_id: int
    payment: Optional[PaymentResponse] = None


@router.get("", response_model=List[PaymentResponse])
def list_payments(
    agent_id: Optional[int] = Query(None),
    status: Optional[PaymentStatus] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return PaymentService.list_payments(db, agent_id=agent_id, status=status, limit=limit)


@router.post("/sync", response_model=Dict[str, int])
def sync_all_payments(
    db: Session = Depends(get_db),
    gateway: PayoutGateway = Depends(get_payout_gateway),
):
    """Sync every processing payment with the provider now."""
    return gateway.sync_processing_payments(db)


@router.post("/from-referral/{referral_id}", response_model=CreatePayoutResponse)
def create_payout_for_referral(referral_id: int, db: Session = Depends(get_db)):
    """Create the pending payout of a settled referral whose payout creation failed."""
    payment = PaymentService.create_payout(db, referral_id)
    return CreatePayoutResponse(
        referral_id=referral_id,
        payment=PaymentResponse.model_validate(payment) if payment else None,
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: int, db: Session = Depends(get_db)):
    return PaymentService.get_payment(db, payment_id)


@router.post("/{payment_id}/submit", response_model=PayoutResultResponse)
def submit_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    gateway: PayoutGateway = Depends(get_payout_gateway),
):
    """Send a pending payment to the provider (manual retry). Never resubmits a sent payment."""
    result = gateway.submit_payment(db, payment_id)
    return PayoutResultResponse(**asdict(result))


@router.post("/{payment_id}/sync", response_model=PayoutResultResponse)
def sync_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    gateway: PayoutGateway = Depends(get_payout_gateway),
):
    result = gateway.sync_payment_status(db, payment_id)
    return PayoutResultResponse(**asdict(result))
