"""
Service for managing commission rate schedules.

The global schedule is the set of CommissionTier rows with no agent. An agent
override schedule, when it has any rows, replaces the global schedule for that
agent. Setting a schedule replaces all of its rows at once.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from core.exceptions import NotFoundError, ValidationError
from models import Agent, CommissionTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierInput:
    """One requested schedule step."""
    min_monthly_revenue: int
    commission_rate: Decimal


def validate_schedule(tiers: Sequence[TierInput]) -> List[TierInput]:
    """
    Validate a schedule and return it sorted by threshold.

    Rules: thresholds non-negative and unique; rates within [0, 1]; rates do not
    decrease as the threshold grows, so more volume never lowers the rate.

    Raises:
        ValidationError: On the first violated rule
    """
    seen: set[int] = set()
    for tier in tiers:
        if tier.min_monthly_revenue < 0:
            raise ValidationError(
                f"Tier threshold must be non-negative, got {tier.min_monthly_revenue}",
                field="min_monthly_revenue",
            )
        if tier.min_monthly_revenue in seen:
            raise ValidationError(
                f"Duplicate tier threshold: {tier.min_monthly_revenue}",
                field="min_monthly_revenue",
            )
        seen.add(tier.min_monthly_revenue)
        try:
            rate = Decimal(tier.commission_rate)
        except (InvalidOperation, TypeError) as e:
            raise ValidationError(f"Invalid commission rate: {tier.commission_rate}", field="commission_rate") from e
        if rate < 0 or rate > 1:
            raise ValidationError(
                f"Commission rate must be between 0 and 1, got {rate}",
                field="commission_rate",
            )

    ordered = sorted(tiers, key=lambda t: t.min_monthly_revenue)
    for lower, higher in zip(ordered, ordered[1:]):
        if Decimal(higher.commission_rate) < Decimal(lower.commission_rate):
            raise ValidationError(
                f"Commission rate decreases at threshold {higher.min_monthly_revenue}",
                field="commission_rate",
            )
    return ordered


class CommissionTierService:
    """Service for commission tier schedules."""

    @staticmethod
    def get_global_tiers(db: Session) -> List[CommissionTier]:
        return list(db.scalars(
            select(CommissionTier)
            .where(CommissionTier.agent_id.is_(None))
            .order_by(CommissionTier.min_monthly_revenue)
        ))

    @staticmethod
    def get_agent_tiers(db: Session, agent_id: int) -> List[CommissionTier]:
        """Agent override rows; an empty list means the agent uses the global schedule."""
        return list(db.scalars(
            select(CommissionTier)
            .where(CommissionTier.agent_id == agent_id)
            .order_by(CommissionTier.min_monthly_revenue)
        ))

    @staticmethod
    def set_global_tiers(db: Session, tiers: Sequence[TierInput]) -> List[CommissionTier]:
        """Replace the global schedule."""
        return CommissionTierService._replace(db, None, tiers)

    @staticmethod
    def set_agent_tiers(db: Session, agent_id: int, tiers: Sequence[TierInput]) -> List[CommissionTier]:
        """
        Replace an agent's override schedule. An empty list removes the override.

        Raises:
            NotFoundError: Unknown agent
            ValidationError: Invalid schedule
        """
        if db.get(Agent, agent_id) is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        return CommissionTierService._replace(db, agent_id, tiers)

    @staticmethod
    def _replace(db: Session, agent_id: Optional[int], tiers: Sequence[TierInput]) -> List[CommissionTier]:
        ordered = validate_schedule(tiers)

        if agent_id is None:
            db.execute(delete(CommissionTier).where(CommissionTier.agent_id.is_(None)))
        else:
            db.execute(delete(CommissionTier).where(CommissionTier.agent_id == agent_id))

        rows = [
            CommissionTier(
                agent_id=agent_id,
                min_monthly_revenue=tier.min_monthly_revenue,
                commission_rate=Decimal(tier.commission_rate),
            )
            for tier in ordered
        ]
        db.add_all(rows)
        db.commit()

        scope = "global" if agent_id is None else f"agent {agent_id}"
        logger.info(f"Commission schedule for {scope} replaced with {len(rows)} tier(s)")
        return rows
