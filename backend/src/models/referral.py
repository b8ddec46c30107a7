"""
Referral model representing one patient directed by one agent to one clinic.

A referral is never deleted. Its status only moves forward through the
lifecycle (see services.referral_state_machine) and every change is recorded
in ReferralStatusHistory. Monetary fields are integers in minor units (kopecks).

Financial invariants:
- treatment_amount, once set, changes only through an explicit correction
- commission_amount is set if and only if status is visited or paid
- linked_report_id points at the single approved ClinicReport (unique)
"""

import enum
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String, Text, ForeignKey, TIMESTAMP, Date, BigInteger, Integer, Numeric,
    Index, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base
from models.base import status_enum


class ReferralStatus(str, enum.Enum):
    """Referral lifecycle states."""
    NEW = "new"
    IN_PROGRESS = "in_progress"
    CONTACTED = "contacted"
    SCHEDULED = "scheduled"
    BOOKED = "booked"
    BOOKED_ELSEWHERE = "booked_elsewhere"
    VISITED = "visited"
    PAID = "paid"
    DUPLICATE = "duplicate"
    NO_ANSWER = "no_answer"
    CANCELLED = "cancelled"


class Referral(Base):
    """Patient referral and its settlement state."""

    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the referral."""

    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id", ondelete="RESTRICT"))
    """Agent who submitted the referral."""

    clinic_id: Mapped[Optional[int]] = mapped_column(ForeignKey("clinics.id"), nullable=True)
    """Target clinic, when the agent chose one."""

    clinic_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    """Clinic name as entered by the agent (may not resolve to a Clinic row)."""

    patient_full_name: Mapped[str] = mapped_column(String(255))
    patient_birthdate: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    patient_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    patient_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[ReferralStatus] = mapped_column(
        status_enum(ReferralStatus), default=ReferralStatus.NEW
    )

    treatment_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    """Confirmed treatment amount in kopecks."""

    commission_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    """Gross commission in kopecks."""

    commission_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 4), nullable=True)
    """Rate resolved at settlement (decimal fraction, e.g. 0.0700). Kept for audit and corrections."""

    linked_report_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, unique=True)
    """The approved ClinicReport that settled this referral."""

    settled_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    """When the treatment amount was confirmed; drives the agent's trailing revenue window."""

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    # Relationships
    agent = relationship("Agent", back_populates="referrals")
    clinic = relationship("Clinic", back_populates="referrals")
    history = relationship(
        "ReferralStatusHistory",
        back_populates="referral",
        order_by="ReferralStatusHistory.id",
    )

    __table_args__ = (
        CheckConstraint('treatment_amount IS NULL OR treatment_amount >= 0', name='ck_referrals_treatment_amount_non_negative'),
        CheckConstraint('commission_amount IS NULL OR commission_amount >= 0', name='ck_referrals_commission_amount_non_negative'),
        Index('idx_referrals_agent_settled', 'agent_id', 'settled_at'),
        Index('idx_referrals_clinic_status', 'clinic_id', 'status'),
        Index('idx_referrals_status', 'status'),
    )
