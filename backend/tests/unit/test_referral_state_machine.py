"""
Unit tests for the referral status state machine.
"""

import pytest
from hypothesis import given, strategies as st

from core.exceptions import InvalidTransition, PreconditionError
from models import ReferralStatus
from services.referral_state_machine import (
    ALLOWED_TRANSITIONS,
    OPEN_STATUSES,
    SETTLEMENT_STATUSES,
    SIDE_EXITS,
    TERMINAL_STATUSES,
    can_transition,
    ensure_manual_transition,
    ensure_transition,
    is_terminal,
)

S = ReferralStatus


class TestTransitions:

    @pytest.mark.parametrize("from_status,to_status", [
        (S.NEW, S.IN_PROGRESS),
        (S.IN_PROGRESS, S.CONTACTED),
        (S.CONTACTED, S.SCHEDULED),
        (S.SCHEDULED, S.BOOKED),
        (S.SCHEDULED, S.BOOKED_ELSEWHERE),
        (S.BOOKED, S.VISITED),
        (S.BOOKED_ELSEWHERE, S.VISITED),
        (S.VISITED, S.PAID),
    ])
    def test_forward_path(self, from_status, to_status):
        assert can_transition(from_status, to_status)

    def test_forward_skips_allowed(self):
        assert can_transition(S.NEW, S.BOOKED)
        assert can_transition(S.NEW, S.VISITED)

    @pytest.mark.parametrize("from_status,to_status", [
        (S.PAID, S.NEW),
        (S.BOOKED, S.NEW),
        (S.CONTACTED, S.IN_PROGRESS),
        (S.BOOKED, S.BOOKED_ELSEWHERE),
        (S.NEW, S.PAID),
        (S.VISITED, S.CANCELLED),
        (S.CANCELLED, S.NEW),
    ])
    def test_illegal_transitions(self, from_status, to_status):
        assert not can_transition(from_status, to_status)
        with pytest.raises(InvalidTransition) as exc_info:
            ensure_transition(from_status, to_status)
        assert exc_info.value.from_status == from_status.value
        assert exc_info.value.to_status == to_status.value

    def test_invalid_transition_is_a_precondition_error(self):
        with pytest.raises(PreconditionError):
            ensure_transition(S.PAID, S.NEW)

    @pytest.mark.parametrize("status", [S.NEW, S.IN_PROGRESS, S.CONTACTED, S.SCHEDULED, S.BOOKED, S.BOOKED_ELSEWHERE])
    def test_side_exits_reachable_before_visit(self, status):
        for side_exit in SIDE_EXITS:
            assert can_transition(status, side_exit)

    def test_terminal_states_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert is_terminal(status)
            assert ALLOWED_TRANSITIONS[status] == frozenset()

    def test_visited_only_leads_to_paid(self):
        assert ALLOWED_TRANSITIONS[S.VISITED] == frozenset({S.PAID})

    @pytest.mark.parametrize("status", sorted(SETTLEMENT_STATUSES, key=lambda s: s.value))
    def test_settlement_statuses_never_exit_to_unsettled(self, status):
        assert ALLOWED_TRANSITIONS[status] <= SETTLEMENT_STATUSES
        for side_exit in SIDE_EXITS:
            assert not can_transition(status, side_exit)

    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(ReferralStatus)

    def test_open_statuses_exclude_settled_and_terminal(self):
        assert S.VISITED not in OPEN_STATUSES
        assert not OPEN_STATUSES & TERMINAL_STATUSES


class TestManualTransitions:

    def test_nudge_allowed(self):
        ensure_manual_transition(S.NEW, S.CONTACTED)

    @pytest.mark.parametrize("target", [S.VISITED, S.PAID])
    def test_settlement_statuses_refused(self, target):
        with pytest.raises(InvalidTransition) as exc_info:
            ensure_manual_transition(S.BOOKED, target)
        assert "settlement" in str(exc_info.value)


class TestStateMachineProperties:

    @given(st.lists(st.sampled_from(list(ReferralStatus)), max_size=30))
    def test_random_walk_never_leaves_a_terminal_state(self, targets):
        status = S.NEW
        for target in targets:
            if can_transition(status, target):
                status = target
            if is_terminal(status):
                assert all(not can_transition(status, t) for t in ReferralStatus)

    @given(st.lists(st.sampled_from(list(ReferralStatus)), max_size=30))
    def test_random_walk_reaches_paid_only_through_visited(self, targets):
        status = S.NEW
        for target in targets:
            if not can_transition(status, target):
                continue
            if target == S.PAID:
                assert status == S.VISITED
            status = target

    @given(st.lists(st.sampled_from(list(ReferralStatus)), max_size=30))
    def test_manual_walk_never_reaches_settlement_statuses(self, targets):
        status = S.NEW
        for target in targets:
            try:
                ensure_manual_transition(status, target)
            except InvalidTransition:
                continue
            status = target
            assert status not in (S.VISITED, S.PAID)
