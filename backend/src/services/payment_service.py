"""
Service for local payout records.

Creating a Payment is the local half of a payout: it records what is owed and
fixes the idempotency key. Sending it to the provider is the payout gateway's
job and happens separately, so a provider outage never blocks settlement.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.constants import IDEMPOTENCY_KEY_MAX_LENGTH, IDEMPOTENCY_KEY_PREFIX
from core.exceptions import NotFoundError, PreconditionError
from models import Agent, Payment, PaymentStatus, PayoutMethod, Referral
from services.rate_engine import CommissionBreakdown, RateTier, compute_commission
from services.referral_state_machine import SETTLEMENT_STATUSES
from utils.datetime_utils import epoch_millis
from utils.payout_validators import mask_card_number

logger = logging.getLogger(__name__)


def build_idempotency_key(payment_id: int, created_at_ms: int) -> str:
    """RP-{payment id}-{creation epoch ms}, cut to the provider's key length."""
    return f"{IDEMPOTENCY_KEY_PREFIX}-{payment_id}-{created_at_ms}"[:IDEMPOTENCY_KEY_MAX_LENGTH]


def describe_destination(agent: Agent) -> Optional[str]:
    """Masked payout destination snapshot for the admin UI."""
    if agent.payout_method == PayoutMethod.CARD:
        return mask_card_number(agent.card_number) if agent.card_number else None
    if agent.payout_method == PayoutMethod.SBP:
        return agent.phone
    if agent.bank_account:
        return f"****{agent.bank_account[-4:]}"
    return None


class PaymentService:
    """Service for payment records."""

    @staticmethod
    def get_payment(db: Session, payment_id: int) -> Payment:
        payment = db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    @staticmethod
    def list_payments(
        db: Session,
        agent_id: Optional[int] = None,
        status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Payment]:
        query = select(Payment)
        if agent_id is not None:
            query = query.where(Payment.agent_id == agent_id)
        if status is not None:
            query = query.where(Payment.status == status)
        query = query.order_by(Payment.created_at.desc(), Payment.id.desc())
        if limit is not None:
            query = query.limit(limit)
        return list(db.scalars(query))

    @staticmethod
    def replay_breakdown(db: Session, referral: Referral) -> CommissionBreakdown:
        """
        Recompute a settled referral's breakdown from its stored amount and rate.

        The stored rate is fed back as a single tier, so the result is exactly
        what settlement computed, independent of later schedule changes.
        """
        if referral.treatment_amount is None or referral.commission_rate is None:
            raise PreconditionError(f"Referral {referral.id} is not settled")
        agent = db.get(Agent, referral.agent_id)
        assert agent is not None
        rate = Decimal(referral.commission_rate)
        return compute_commission(
            referral.treatment_amount,
            0,
            agent.is_self_employed,
            override_tiers=[RateTier(0, rate)],
            base_rate=rate,
        )

    @staticmethod
    def create_payout(
        db: Session,
        referral_id: int,
        breakdown: Optional[CommissionBreakdown] = None,
    ) -> Optional[Payment]:
        """
        Create the pending Payment for a settled referral and commit it.

        Args:
            db: Database session
            referral_id: Settled referral
            breakdown: Commission breakdown from settlement; replayed from the
                referral when omitted (manual re-creation after a failure)

        Returns:
            The new Payment, or None when the net amount is zero

        Raises:
            NotFoundError: Unknown referral
            PreconditionError: Referral not settled, or it already has a live payout
        """
        referral = db.get(Referral, referral_id)
        if referral is None:
            raise NotFoundError(f"Referral {referral_id} not found")
        if referral.status not in SETTLEMENT_STATUSES or referral.commission_amount is None:
            raise PreconditionError(f"Referral {referral_id} is not settled")

        live = db.scalar(
            select(Payment.id).where(
                Payment.referral_id == referral_id,
                Payment.status.in_([PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.PAID]),
            )
        )
        if live is not None:
            raise PreconditionError(f"Referral {referral_id} already has payment {live}")

        if breakdown is None:
            breakdown = PaymentService.replay_breakdown(db, referral)
        if breakdown.net_amount == 0:
            logger.info(f"Referral {referral_id} has zero net commission, no payout created")
            return None

        agent = db.get(Agent, referral.agent_id)
        assert agent is not None
        payment = Payment(
            agent_id=agent.id,
            referral_id=referral_id,
            amount=breakdown.net_amount,
            gross_amount=breakdown.gross_amount,
            tax_amount=breakdown.tax_amount,
            social_contributions=breakdown.social_contributions,
            status=PaymentStatus.PENDING,
            payout_method=agent.payout_method,
            payout_destination=describe_destination(agent),
        )
        db.add(payment)
        db.flush()
        payment.idempotency_key = build_idempotency_key(payment.id, epoch_millis(payment.created_at))
        db.commit()

        logger.info(
            f"Created payment {payment.id} for referral {referral_id}: "
            f"agent {agent.id}, amount {payment.amount} (key {payment.idempotency_key})"
        )
        return payment
