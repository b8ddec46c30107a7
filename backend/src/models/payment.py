"""
Payment model: one payout attempt to one agent through the settlement provider.

A payment is created locally as pending, becomes processing once the provider
accepted it, and ends in paid, rejected or error after status sync. Terminal
payments are immutable. A payment that has a provider_payment_id is never
submitted again.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, ForeignKey, TIMESTAMP, BigInteger, Integer, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base
from models.base import status_enum
from models.agent import PayoutMethod


class PaymentStatus(str, enum.Enum):
    """Local payout state."""
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    REJECTED = "rejected"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.PAID, PaymentStatus.REJECTED, PaymentStatus.ERROR)


class Payment(Base):
    """Payout to an agent."""

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id", ondelete="RESTRICT"))

    referral_id: Mapped[Optional[int]] = mapped_column(ForeignKey("referrals.id"), nullable=True)
    """Referral whose settlement produced this payout."""

    amount: Mapped[int] = mapped_column(BigInteger)
    """Amount to transfer to the agent, in kopecks (net of withholding)."""

    gross_amount: Mapped[int] = mapped_column(BigInteger)
    tax_amount: Mapped[int] = mapped_column(BigInteger, default=0)
    social_contributions: Mapped[int] = mapped_column(BigInteger, default=0)

    status: Mapped[PaymentStatus] = mapped_column(
        status_enum(PaymentStatus), default=PaymentStatus.PENDING
    )

    idempotency_key: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, unique=True)
    """Sent to the provider as the customer payment id; derived from id and creation time.
    Assigned in the same transaction that creates the row, right after the id is known."""

    payout_method: Mapped[PayoutMethod] = mapped_column(status_enum(PayoutMethod))
    """Payout method snapshot at creation."""

    payout_destination: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    """Masked destination snapshot (card tail, phone, account)."""

    provider_payment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    provider_status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    provider_status_text: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    submit_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    """Reason string of the last failed submission, shown to administrators."""

    last_error_ambiguous: Mapped[bool] = mapped_column(default=False)
    """True when the last failure may have reached the provider (timeout, 5xx)."""

    submitted_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    # Relationships
    agent = relationship("Agent", back_populates="payments")
    referral = relationship("Referral")

    __table_args__ = (
        CheckConstraint('amount >= 0', name='ck_payments_amount_non_negative'),
        Index('idx_payments_agent_status', 'agent_id', 'status'),
        Index('idx_payments_status', 'status'),
    )
