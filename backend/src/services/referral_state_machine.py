"""
Referral status state machine.

Pure transition rules, no I/O. The forward path is

    new -> in_progress -> contacted -> scheduled -> booked | booked_elsewhere -> visited -> paid

Forward skips along the path are allowed (an agent may learn that a patient
already booked without every intermediate nudge). Side exits duplicate,
no_answer and cancelled are reachable from every pre-visit state. paid and the
side exits are terminal.

visited and paid are settlement states: visited is entered only together with
a treatment amount, paid only together with a commission amount. Neither is
reachable through a plain status nudge.

visited is not terminal, yet its only exit is paid. A side exit from visited
would leave a cancelled referral holding a commission, and the treatment
amount cannot be cleared once set. Settlement moves through visited to paid
in one operation, so no referral rests in visited.
"""

from typing import Dict, FrozenSet

from core.exceptions import InvalidTransition
from models.referral import ReferralStatus

# Ordered pre-visit path; both booked variants share the last rank
_FORWARD_RANK: Dict[ReferralStatus, int] = {
    ReferralStatus.NEW: 0,
    ReferralStatus.IN_PROGRESS: 1,
    ReferralStatus.CONTACTED: 2,
    ReferralStatus.SCHEDULED: 3,
    ReferralStatus.BOOKED: 4,
    ReferralStatus.BOOKED_ELSEWHERE: 4,
}

SIDE_EXITS: FrozenSet[ReferralStatus] = frozenset({
    ReferralStatus.DUPLICATE,
    ReferralStatus.NO_ANSWER,
    ReferralStatus.CANCELLED,
})

TERMINAL_STATUSES: FrozenSet[ReferralStatus] = SIDE_EXITS | {ReferralStatus.PAID}

SETTLEMENT_STATUSES: FrozenSet[ReferralStatus] = frozenset({
    ReferralStatus.VISITED,
    ReferralStatus.PAID,
})

# Statuses a clinic report may still be matched against
OPEN_STATUSES: FrozenSet[ReferralStatus] = frozenset({
    ReferralStatus.NEW,
    ReferralStatus.IN_PROGRESS,
    ReferralStatus.CONTACTED,
    ReferralStatus.SCHEDULED,
    ReferralStatus.BOOKED,
})

# Statuses from which settlement (-> visited) may start
SETTLEABLE_STATUSES: FrozenSet[ReferralStatus] = frozenset(_FORWARD_RANK)


def _build_transitions() -> Dict[ReferralStatus, FrozenSet[ReferralStatus]]:
    table: Dict[ReferralStatus, FrozenSet[ReferralStatus]] = {}
    for status, rank in _FORWARD_RANK.items():
        forward = {
            target for target, target_rank in _FORWARD_RANK.items()
            if target_rank > rank
        }
        table[status] = frozenset(forward | SIDE_EXITS | {ReferralStatus.VISITED})
    # No side exits once a commission may exist
    table[ReferralStatus.VISITED] = frozenset({ReferralStatus.PAID})
    for status in TERMINAL_STATUSES:
        table[status] = frozenset()
    return table


ALLOWED_TRANSITIONS: Dict[ReferralStatus, FrozenSet[ReferralStatus]] = _build_transitions()


def is_terminal(status: ReferralStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(from_status: ReferralStatus, to_status: ReferralStatus) -> bool:
    """Whether the lifecycle allows moving from from_status to to_status."""
    return to_status in ALLOWED_TRANSITIONS[from_status]


def ensure_transition(from_status: ReferralStatus, to_status: ReferralStatus) -> None:
    """Raise InvalidTransition unless the move is part of the lifecycle."""
    if not can_transition(from_status, to_status):
        raise InvalidTransition(from_status.value, to_status.value)


def ensure_manual_transition(from_status: ReferralStatus, to_status: ReferralStatus) -> None:
    """
    Validate a status nudge made by an agent or administrator.

    Settlement statuses carry money and are refused here even when the
    lifecycle would allow them; they are entered only through settlement.
    """
    if to_status in SETTLEMENT_STATUSES:
        raise InvalidTransition(
            from_status.value,
            to_status.value,
            f"Status {to_status.value} is set only by settlement",
        )
    ensure_transition(from_status, to_status)
