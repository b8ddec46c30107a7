"""
CommissionTier model: one step of a commission rate schedule.

Rows with agent_id NULL form the global schedule; rows with an agent_id form
that agent's override schedule, which replaces the global one entirely.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import ForeignKey, TIMESTAMP, BigInteger, Numeric, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


class CommissionTier(Base):
    """Revenue threshold mapped to a commission rate."""

    __tablename__ = "commission_tiers"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    agent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("agents.id", ondelete="CASCADE"), nullable=True)
    """Owner of an override schedule; NULL for the global schedule."""

    min_monthly_revenue: Mapped[int] = mapped_column(BigInteger)
    """Lowest trailing monthly revenue (kopecks) at which this tier applies."""

    commission_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4))
    """Decimal fraction, e.g. 0.1000 for 10%."""

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    agent = relationship("Agent", back_populates="commission_tiers")

    __table_args__ = (
        CheckConstraint('min_monthly_revenue >= 0', name='ck_commission_tiers_threshold_non_negative'),
        Index('idx_commission_tiers_agent', 'agent_id'),
    )
