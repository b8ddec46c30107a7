"""
Clinic model representing partner clinics that receive referred patients.

Clinics send treatment reports by email; report_emails lists the sender
addresses used to attribute an inbound report to a clinic.
"""

from datetime import datetime
from typing import List

from sqlalchemy import String, Boolean, TIMESTAMP, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


class Clinic(Base):
    """Partner clinic."""

    __tablename__ = "clinics"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the clinic."""

    name: Mapped[str] = mapped_column(String(255))
    """Display name of the clinic."""

    report_emails: Mapped[List[str]] = mapped_column(JSON, default=list)
    """Sender addresses from which this clinic sends treatment reports (lower-case)."""

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    # Relationships
    referrals = relationship("Referral", back_populates="clinic")
    reports = relationship("ClinicReport", back_populates="clinic")
