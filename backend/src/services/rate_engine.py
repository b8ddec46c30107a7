"""
Commission rate engine.

Pure functions over snapshots: no database access, no clock, no randomness.
The same inputs always produce the same CommissionBreakdown, which lets a
settlement be replayed for audit from the values stored on the referral.

Amounts are integers in kopecks. Rates are Decimal fractions (0.07 == 7%).
Rounding is to the nearest kopeck with ties away from zero.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Protocol, Sequence

from core.config import BASE_COMMISSION_RATE
from core.constants import INCOME_TAX_RATE, SOCIAL_CONTRIBUTIONS_RATE
from core.exceptions import ValidationError
from utils.money import format_rubles


class TierLike(Protocol):
    """Anything with a threshold and a rate; CommissionTier rows qualify."""
    min_monthly_revenue: int
    commission_rate: Decimal


@dataclass(frozen=True)
class RateTier:
    """Detached schedule step, used by tests and by callers holding plain values."""
    min_monthly_revenue: int
    commission_rate: Decimal


@dataclass(frozen=True)
class CommissionBreakdown:
    """
    Result of a commission computation.

    Attributes:
        rate: Resolved commission rate
        gross_amount: Commission before withholding
        tax_amount: Income tax withheld from the payee (0 for self-employed)
        social_contributions: Employer-side contributions, accrued on top and
            not deducted from what the payee receives
        net_amount: Amount transferred to the payee
        details: One-line human-readable explanation, shown in the admin UI
    """
    rate: Decimal
    gross_amount: int
    tax_amount: int
    social_contributions: int
    net_amount: int
    details: str


def round_minor(value: Decimal) -> int:
    """Round a Decimal amount of kopecks to an integer, ties away from zero."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_rate(rate: Decimal) -> str:
    """Decimal("0.07") -> "7%", Decimal("0.125") -> "12.5%"."""
    percent = (rate * 100).normalize()
    return f"{percent:f}%"


def _check_rate(rate: Decimal, field: str) -> None:
    if rate < 0 or rate > 1:
        raise ValidationError(f"{field} must be between 0 and 1, got {rate}", field=field)


def resolve_commission_rate(
    agent_monthly_volume: int,
    override_tiers: Optional[Sequence[TierLike]] = None,
    global_tiers: Optional[Sequence[TierLike]] = None,
    base_rate: Decimal = BASE_COMMISSION_RATE,
) -> Decimal:
    """
    Resolve the commission rate for an agent's trailing monthly volume.

    A non-empty override list replaces the global schedule entirely; an empty
    or missing override list falls back to the global schedule. Within the
    chosen schedule the tier with the greatest threshold not exceeding the
    volume wins. base_rate applies when no tier qualifies.

    Raises:
        ValidationError: If the volume is negative or a rate is outside [0, 1]
    """
    if agent_monthly_volume < 0:
        raise ValidationError(
            f"agent_monthly_volume must be non-negative, got {agent_monthly_volume}",
            field="agent_monthly_volume",
        )
    _check_rate(base_rate, "base_rate")

    schedule = override_tiers if override_tiers else (global_tiers or [])

    best: Optional[TierLike] = None
    for tier in schedule:
        if tier.min_monthly_revenue > agent_monthly_volume:
            continue
        if best is None or tier.min_monthly_revenue > best.min_monthly_revenue:
            best = tier

    if best is None:
        return base_rate
    rate = Decimal(best.commission_rate)
    _check_rate(rate, "commission_rate")
    return rate


def compute_commission(
    treatment_amount: int,
    agent_monthly_volume: int,
    is_self_employed: bool,
    override_tiers: Optional[Sequence[TierLike]] = None,
    global_tiers: Optional[Sequence[TierLike]] = None,
    base_rate: Decimal = BASE_COMMISSION_RATE,
) -> CommissionBreakdown:
    """
    Compute an agent's commission for one treatment amount.

    Self-employed payees receive the gross amount and remit their own tax.
    Everyone else has 13% income tax withheld; 30% social contributions are
    accrued on top and do not reduce the payout.

    Args:
        treatment_amount: Confirmed treatment amount in kopecks
        agent_monthly_volume: Agent's trailing monthly revenue in kopecks
        is_self_employed: Payee tax regime
        override_tiers: Agent-specific schedule (replaces the global one when non-empty)
        global_tiers: Global schedule
        base_rate: Rate used when no tier qualifies

    Returns:
        CommissionBreakdown

    Raises:
        ValidationError: On negative amounts or rates outside [0, 1]
    """
    if treatment_amount < 0:
        raise ValidationError(
            f"treatment_amount must be non-negative, got {treatment_amount}",
            field="treatment_amount",
        )

    rate = resolve_commission_rate(agent_monthly_volume, override_tiers, global_tiers, base_rate)
    gross_amount = round_minor(Decimal(treatment_amount) * rate)
    summary = f"{format_rate(rate)} от {format_rubles(treatment_amount)} = {format_rubles(gross_amount)}"

    if is_self_employed:
        return CommissionBreakdown(
            rate=rate,
            gross_amount=gross_amount,
            tax_amount=0,
            social_contributions=0,
            net_amount=gross_amount,
            details=f"Самозанятый: {summary}. Налог НПД агент платит самостоятельно.",
        )

    tax_amount = round_minor(Decimal(gross_amount) * INCOME_TAX_RATE)
    social_contributions = round_minor(Decimal(gross_amount) * SOCIAL_CONTRIBUTIONS_RATE)
    net_amount = gross_amount - tax_amount
    return CommissionBreakdown(
        rate=rate,
        gross_amount=gross_amount,
        tax_amount=tax_amount,
        social_contributions=social_contributions,
        net_amount=net_amount,
        details=(
            f"Физлицо: {summary}. Минус НДФЛ {format_rate(INCOME_TAX_RATE)} "
            f"({format_rubles(tax_amount)}) = {format_rubles(net_amount)} к выплате. "
            f"Страховые взносы {format_rate(SOCIAL_CONTRIBUTIONS_RATE)} "
            f"({format_rubles(social_contributions)}) начисляются сверх выплаты."
        ),
    )
