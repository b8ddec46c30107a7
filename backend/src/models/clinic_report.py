"""
ClinicReport model: a structured treatment report extracted from one inbound email.

The raw email metadata is retained for audit. The record is created by ingestion,
routed once by the report matcher, and afterwards changed only by administrator
actions (approve, reject, edit, relink). Reports are never deleted.
"""

import enum
from datetime import datetime, date
from typing import Optional, List

from sqlalchemy import String, Text, ForeignKey, TIMESTAMP, Date, BigInteger, Integer, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base
from models.base import status_enum


class ClinicReportStatus(str, enum.Enum):
    """Review state of a clinic report."""
    PENDING_REVIEW = "pending_review"
    AUTO_MATCHED = "auto_matched"
    APPROVED = "approved"
    REJECTED = "rejected"


class ClinicReport(Base):
    """Treatment report awaiting (or past) reconciliation against a referral."""

    __tablename__ = "clinic_reports"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    source_id: Mapped[str] = mapped_column(String(255), unique=True)
    """Producer-assigned identity of the source (email message id, per patient). Guards re-ingestion."""

    clinic_id: Mapped[Optional[int]] = mapped_column(ForeignKey("clinics.id"), nullable=True)
    """Clinic resolved from the sender address or extracted clinic name."""

    # Raw source metadata (audit)
    email_from: Mapped[str] = mapped_column(String(320))
    email_subject: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    email_received_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))
    email_body_raw: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Extracted fields
    patient_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    clinic_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    visit_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    treatment_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    """Treatment amount in kopecks, as extracted."""

    services: Mapped[List[str]] = mapped_column(JSON, default=list)

    extraction_confidence: Mapped[int] = mapped_column(Integer, default=0)
    """Extraction confidence reported by the producer, 0-100."""

    match_confidence: Mapped[int] = mapped_column(Integer, default=0)
    """Best candidate score from the report matcher, 0-100."""

    status: Mapped[ClinicReportStatus] = mapped_column(
        status_enum(ClinicReportStatus), default=ClinicReportStatus.PENDING_REVIEW
    )

    linked_referral_id: Mapped[Optional[int]] = mapped_column(ForeignKey("referrals.id"), nullable=True)
    """Referral this report is linked to (auto-matched, relinked, or approved)."""

    suggested_referral_id: Mapped[Optional[int]] = mapped_column(ForeignKey("referrals.id"), nullable=True)
    """Best candidate in the review band; shown to reviewers, never used for settlement."""

    reviewed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    reviewer_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    # Relationships
    clinic = relationship("Clinic", back_populates="reports")
    linked_referral = relationship("Referral", foreign_keys=[linked_referral_id])
    suggested_referral = relationship("Referral", foreign_keys=[suggested_referral_id])

    __table_args__ = (
        Index('idx_clinic_reports_status', 'status'),
        Index('idx_clinic_reports_linked_referral', 'linked_referral_id'),
    )
