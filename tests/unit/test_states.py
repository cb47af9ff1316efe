"""Unit tests for loan and payment state predicates"""

import pytest
from lending_core.domain.models import LOAN_TRANSITIONS, LoanState, PaymentState
from lending_core.infrastructure.database.repositories import ACTIVE_STATES, DELINQUENT_STATES
from lending_core.services.lifecycle import REPAYABLE_STATES


def test_active_and_delinquent_states():
    assert ACTIVE_STATES == (LoanState.DISBURSED, LoanState.OVERDUE)
    assert DELINQUENT_STATES == (LoanState.OVERDUE, LoanState.DEFAULTED)


def test_repayable_states():
    """Test repayments are accepted once funds are out, until the loan is paid"""
    assert set(REPAYABLE_STATES) == {LoanState.DISBURSED, LoanState.OVERDUE, LoanState.DEFAULTED}


@pytest.mark.parametrize("state", list(LoanState))
def test_every_state_can_reach_paid_except_paid(state):
    assert state.can_transition_to(LoanState.PAID) is (state is not LoanState.PAID)


def test_paid_is_terminal():
    assert LOAN_TRANSITIONS[LoanState.PAID] == frozenset()


def test_payment_settled():
    assert PaymentState.PENDING.is_settled is False
    assert PaymentState.CLEARED.is_settled is True
    assert PaymentState.FAILED.is_settled is True
