"""
Agent model representing referring parties (physicians, coordinators).

Agents submit patient referrals and receive commission payouts through the
settlement provider. The payout details stored here are checked before every
provider submission.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Boolean, TIMESTAMP, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base
from models.base import status_enum


class PayoutMethod(str, enum.Enum):
    """How an agent receives money."""
    CARD = "card"
    SBP = "sbp"  # fast payment system, addressed by phone number
    BANK_ACCOUNT = "bank_account"


class Agent(Base):
    """
    Agent entity: the payee of referral commissions.

    provider_payee_id / provider_requisite_id are filled in once the settlement
    provider knows the agent; until then payouts use the combined
    "create payee + pay" call.
    """

    __tablename__ = "agents"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the agent."""

    external_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    """Messenger chat id used for notifications."""

    full_name: Mapped[str] = mapped_column(String(255))
    """Full name as "Last First Middle"."""

    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)

    tax_id: Mapped[Optional[str]] = mapped_column(String(12), nullable=True)
    """National tax id (INN), 12 digits for individuals."""

    is_self_employed: Mapped[bool] = mapped_column(Boolean, default=False)
    """Self-employed payees remit their own tax; no withholding applies."""

    payout_method: Mapped[PayoutMethod] = mapped_column(
        status_enum(PayoutMethod), default=PayoutMethod.CARD
    )
    card_number: Mapped[Optional[str]] = mapped_column(String(19), nullable=True)
    bank_account: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    bank_bik: Mapped[Optional[str]] = mapped_column(String(9), nullable=True)

    provider_payee_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    """Payee (contractor) id at the settlement provider."""

    provider_requisite_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    """Payment requisite id at the settlement provider for the current payout method."""

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    # Relationships
    referrals = relationship("Referral", back_populates="agent")
    payments = relationship("Payment", back_populates="agent")
    commission_tiers = relationship(
        "CommissionTier", back_populates="agent", order_by="CommissionTier.min_monthly_revenue"
    )
    """Agent-specific override schedule. When non-empty it replaces the global schedule."""

    __table_args__ = (
        Index('idx_agents_tax_id', 'tax_id'),
    )
