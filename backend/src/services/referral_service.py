"""
Referral store operations.

The referral table is the single source of truth for a referral's lifecycle
and money. Every status or amount change goes through this module and leaves
a ReferralStatusHistory row. Status changes are compare-and-swap updates on
the observed status, so two concurrent writers cannot both succeed.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from core.constants import REVENUE_WINDOW_DAYS
from core.exceptions import NotFoundError, PreconditionError, ValidationError
from models import Agent, Clinic, Referral, ReferralStatus, ReferralStatusHistory
from services.rate_engine import CommissionBreakdown, round_minor
from services.referral_state_machine import (
    SETTLEMENT_STATUSES,
    ensure_manual_transition,
    ensure_transition,
)
from utils.datetime_utils import ensure_moscow, moscow_now
from utils.phone_validator import validate_russian_phone_optional

logger = logging.getLogger(__name__)

SETTLEMENT_ACTOR = "settlement"


class ReferralService:
    """Service for referral lifecycle operations."""

    @staticmethod
    def create_referral(
        db: Session,
        agent_id: int,
        patient_full_name: str,
        clinic_id: Optional[int] = None,
        clinic_name: Optional[str] = None,
        patient_birthdate: Optional[date] = None,
        patient_phone: Optional[str] = None,
        patient_email: Optional[str] = None,
        notes: Optional[str] = None,
        actor: str = "agent",
    ) -> Referral:
        """
        Register a new referral in status new.

        Raises:
            ValidationError: Missing patient name or malformed phone
            NotFoundError: Unknown agent or clinic
        """
        name = (patient_full_name or "").strip()
        if not name:
            raise ValidationError("Patient full name is required", field="patient_full_name")
        try:
            phone = validate_russian_phone_optional(patient_phone)
        except ValueError as e:
            raise ValidationError(str(e), field="patient_phone") from e

        if db.get(Agent, agent_id) is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        if clinic_id is not None:
            clinic = db.get(Clinic, clinic_id)
            if clinic is None:
                raise NotFoundError(f"Clinic {clinic_id} not found")
            clinic_name = clinic_name or clinic.name

        referral = Referral(
            agent_id=agent_id,
            clinic_id=clinic_id,
            clinic_name=clinic_name,
            patient_full_name=name,
            patient_birthdate=patient_birthdate,
            patient_phone=phone,
            patient_email=patient_email,
            notes=notes,
            status=ReferralStatus.NEW,
        )
        db.add(referral)
        db.flush()
        db.add(ReferralStatusHistory(
            referral_id=referral.id,
            from_status=None,
            to_status=ReferralStatus.NEW,
            actor=actor,
        ))
        db.commit()

        logger.info(f"Created referral {referral.id} for agent {agent_id}")
        return referral

    @staticmethod
    def get_referral(db: Session, referral_id: int) -> Referral:
        """
        Get a referral by id.

        Raises:
            NotFoundError: If the referral does not exist
        """
        referral = db.get(Referral, referral_id)
        if referral is None:
            raise NotFoundError(f"Referral {referral_id} not found")
        return referral

    @staticmethod
    def list_referrals(
        db: Session,
        agent_id: Optional[int] = None,
        clinic_id: Optional[int] = None,
        status: Optional[ReferralStatus] = None,
    ) -> List[Referral]:
        query = select(Referral)
        if agent_id is not None:
            query = query.where(Referral.agent_id == agent_id)
        if clinic_id is not None:
            query = query.where(Referral.clinic_id == clinic_id)
        if status is not None:
            query = query.where(Referral.status == status)
        return list(db.scalars(query.order_by(Referral.created_at.desc(), Referral.id.desc())))

    @staticmethod
    def transition_status(
        db: Session,
        referral_id: int,
        to_status: ReferralStatus,
        actor: str,
        note: Optional[str] = None,
    ) -> Referral:
        """
        Apply a non-financial status change (progress nudge or side exit).

        visited and paid are refused; they are reached only through settlement
        so that the amounts are always set in the same write.

        Raises:
            NotFoundError: Unknown referral
            InvalidTransition: Move not allowed from the current status
            PreconditionError: The referral changed concurrently
        """
        referral = ReferralService.get_referral(db, referral_id)
        from_status = referral.status
        ensure_manual_transition(from_status, to_status)

        result = db.execute(
            update(Referral)
            .where(Referral.id == referral_id, Referral.status == from_status)
            .values(status=to_status, updated_at=moscow_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            db.rollback()
            raise PreconditionError(
                f"Referral {referral_id} was modified concurrently (expected status {from_status.value})"
            )

        db.add(ReferralStatusHistory(
            referral_id=referral_id,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            note=note,
            treatment_amount=referral.treatment_amount,
            commission_amount=referral.commission_amount,
        ))
        db.commit()
        db.refresh(referral)

        logger.info(
            f"Referral {referral_id} status {from_status.value} -> {to_status.value} by {actor}"
        )
        return referral

    @staticmethod
    def record_settlement(
        db: Session,
        referral: Referral,
        observed_status: ReferralStatus,
        treatment_amount: int,
        breakdown: CommissionBreakdown,
        report_id: int,
        settled_at: datetime,
        actor: str = SETTLEMENT_ACTOR,
        note: Optional[str] = None,
    ) -> None:
        """
        Move a referral through visited to paid with its amounts, in one write.

        Used only by the settlement orchestrator. The update is conditional on
        the observed status and on the referral not being linked yet; if another
        approval got there first, nothing is written and PreconditionError is
        raised. Does not commit: the caller owns the transaction.
        """
        ensure_transition(observed_status, ReferralStatus.VISITED)
        ensure_transition(ReferralStatus.VISITED, ReferralStatus.PAID)

        result = db.execute(
            update(Referral)
            .where(
                Referral.id == referral.id,
                Referral.status == observed_status,
                Referral.linked_report_id.is_(None),
            )
            .values(
                status=ReferralStatus.PAID,
                treatment_amount=treatment_amount,
                commission_amount=breakdown.gross_amount,
                commission_rate=breakdown.rate,
                linked_report_id=report_id,
                settled_at=settled_at,
                updated_at=settled_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise PreconditionError(
                f"Referral {referral.id} is already settled or was modified concurrently"
            )

        db.add_all([
            ReferralStatusHistory(
                referral_id=referral.id,
                from_status=observed_status,
                to_status=ReferralStatus.VISITED,
                actor=actor,
                note=note,
                treatment_amount=treatment_amount,
            ),
            ReferralStatusHistory(
                referral_id=referral.id,
                from_status=ReferralStatus.VISITED,
                to_status=ReferralStatus.PAID,
                actor=actor,
                note=breakdown.details,
                treatment_amount=treatment_amount,
                commission_amount=breakdown.gross_amount,
            ),
        ])
        db.flush()
        db.refresh(referral)

    @staticmethod
    def correct_treatment_amount(
        db: Session,
        referral_id: int,
        treatment_amount: int,
        reason: str,
        actor: str,
    ) -> Referral:
        """
        Explicitly correct the treatment amount of a settled referral.

        The commission is recomputed with the rate stored at settlement, so a
        correction never silently changes the tier. Payouts already created are
        not touched; the history row records old and new values for follow-up.

        Raises:
            ValidationError: Negative amount or empty reason
            PreconditionError: Referral has no confirmed amount yet
        """
        if treatment_amount < 0:
            raise ValidationError("treatment_amount must be non-negative", field="treatment_amount")
        if not (reason or "").strip():
            raise ValidationError("A reason is required for amount corrections", field="reason")

        referral = ReferralService.get_referral(db, referral_id)
        if referral.status not in SETTLEMENT_STATUSES or referral.treatment_amount is None:
            raise PreconditionError(
                f"Referral {referral_id} has no confirmed treatment amount to correct"
            )

        old_amount = referral.treatment_amount
        old_commission = referral.commission_amount
        rate = Decimal(referral.commission_rate or 0)
        new_commission = round_minor(Decimal(treatment_amount) * rate)

        result = db.execute(
            update(Referral)
            .where(
                Referral.id == referral_id,
                Referral.status == referral.status,
                Referral.treatment_amount == old_amount,
            )
            .values(
                treatment_amount=treatment_amount,
                commission_amount=new_commission,
                updated_at=moscow_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            db.rollback()
            raise PreconditionError(f"Referral {referral_id} was modified concurrently")

        db.add(ReferralStatusHistory(
            referral_id=referral_id,
            from_status=referral.status,
            to_status=referral.status,
            actor=actor,
            note=f"Amount corrected from {old_amount} to {treatment_amount} (commission {old_commission} -> {new_commission}): {reason.strip()}",
            treatment_amount=treatment_amount,
            commission_amount=new_commission,
        ))
        db.commit()
        db.refresh(referral)

        logger.warning(
            f"Referral {referral_id} treatment amount corrected {old_amount} -> {treatment_amount} by {actor}"
        )
        return referral

    @staticmethod
    def get_history(db: Session, referral_id: int) -> List[ReferralStatusHistory]:
        """Full status and financial history of a referral, oldest first."""
        ReferralService.get_referral(db, referral_id)
        return list(db.scalars(
            select(ReferralStatusHistory)
            .where(ReferralStatusHistory.referral_id == referral_id)
            .order_by(ReferralStatusHistory.id)
        ))

    @staticmethod
    def agent_trailing_revenue(
        db: Session,
        agent_id: int,
        as_of: datetime,
        exclude_referral_id: Optional[int] = None,
    ) -> int:
        """
        Sum of an agent's confirmed treatment amounts settled in the trailing window.

        Args:
            db: Database session
            agent_id: Agent whose volume is measured
            as_of: End of the window (inclusive)
            exclude_referral_id: Referral being settled right now, left out of its own volume

        Returns:
            Revenue in kopecks
        """
        window_end = ensure_moscow(as_of)
        assert window_end is not None
        window_start = window_end - timedelta(days=REVENUE_WINDOW_DAYS)

        query = (
            select(func.coalesce(func.sum(Referral.treatment_amount), 0))
            .where(
                Referral.agent_id == agent_id,
                Referral.status.in_(SETTLEMENT_STATUSES),
                Referral.treatment_amount.is_not(None),
                Referral.settled_at >= window_start,
                Referral.settled_at <= window_end,
            )
        )
        if exclude_referral_id is not None:
            query = query.where(Referral.id != exclude_referral_id)
        return int(db.scalar(query) or 0)
