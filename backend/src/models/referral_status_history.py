"""
Append-only audit trail of referral status and financial changes.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, ForeignKey, TIMESTAMP, BigInteger, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base
from models.base import status_enum
from models.referral import ReferralStatus


class ReferralStatusHistory(Base):
    """
    One row per referral transition or amount correction.

    treatment_amount / commission_amount hold the values in effect after the
    change, so the full financial history can be replayed.
    """

    __tablename__ = "referral_status_history"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    referral_id: Mapped[int] = mapped_column(ForeignKey("referrals.id", ondelete="RESTRICT"))

    from_status: Mapped[Optional[ReferralStatus]] = mapped_column(status_enum(ReferralStatus), nullable=True)
    """Previous status; None for the creation row."""

    to_status: Mapped[ReferralStatus] = mapped_column(status_enum(ReferralStatus))

    actor: Mapped[str] = mapped_column(String(100))
    """Who made the change: an admin identifier, "agent", or "settlement"."""

    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    treatment_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    commission_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    referral = relationship("Referral", back_populates="history")

    __table_args__ = (
        Index('idx_referral_history_referral', 'referral_id'),
    )
