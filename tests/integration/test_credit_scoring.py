"""Integration tests for credit score recomputation"""

import uuid
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session
from lending_core.domain.exceptions import NotFound
from lending_core.domain.models import LoanState
from lending_core.infrastructure.database.models import CreditScoreEvent, OutboxEvent, User
from lending_core.services.credit_scoring import CreditScoringEngine


@pytest.fixture
def engine(db: Session, clock) -> CreditScoringEngine:
    return CreditScoringEngine(db, clock=clock)


def posted(day) -> datetime:
    return datetime.combine(day, time(12, 0), tzinfo=timezone.utc)


def repay_in_full(lifecycle, loan, when):
    payment = lifecycle.record_repayment(loan.id, loan.total_outstanding_cents, posted_at=posted(when))
    lifecycle.settle_payment(payment.id, cleared=True)


def test_fresh_user_history(engine, user):
    """No repayments yet: neutral on-time rate, nothing outstanding"""
    history = engine.snapshot(user.id)

    assert history.on_time_payment_rate == Decimal("0.5")
    assert history.outstanding_principal_cents == 0
    assert history.credit_limit_cents == 5_000_000
    assert history.account_age_days == 400
    assert history.has_recent_delinquency is False
    assert history.recent_on_time_count == 0
    assert history.kyc_approved is True


def test_compute_without_persisting(db: Session, engine, user):
    """600 + 0 + 30 + 10 + 0 + 10 = 650"""
    result = engine.compute(user.id)

    assert result.old_score == 600
    assert result.new_score == 650
    assert result.changed is True
    assert set(result.breakdown) == {"payment_history", "utilization", "tenure", "behavior", "kyc"}

    db.refresh(user)
    assert user.current_score == 600
    assert db.query(CreditScoreEvent).count() == 0
    assert db.query(OutboxEvent).count() == 0


def test_compute_and_persist_records_audit_event(db: Session, engine, user):
    result = engine.compute(user.id, persist=True)

    db.refresh(user)
    assert user.current_score == result.new_score == 650

    events = db.query(CreditScoreEvent).all()
    assert len(events) == 1
    assert events[0].delta == 50
    assert events[0].reason.value == "recompute"
    assert set(events[0].meta["scoring_components"]) == set(result.breakdown)
    assert db.query(OutboxEvent).count() == 0


def test_unchanged_score_adds_no_audit_event(db: Session, engine, user):
    engine.compute(user.id, persist=True)

    rerun = engine.compute(user.id, persist=True)

    assert rerun.changed is False
    assert rerun.delta == 0
    assert db.query(CreditScoreEvent).count() == 1


def test_emit_event_when_score_changes(db: Session, engine, user):
    engine.compute(user.id, emit_event=True)

    events = db.query(OutboxEvent).filter(OutboxEvent.name == "user.score_changed").all()
    assert len(events) == 1
    assert events[0].aggregate_type == "User"
    assert events[0].aggregate_id == user.id
    assert events[0].payload == {"user_id": str(user.id), "old_score": 600, "new_score": 650}
    assert "correlation_id" in events[0].headers

    db.refresh(user)
    assert user.current_score == 600  # emit alone does not persist


def test_no_event_when_score_unchanged(db: Session, engine, make_user):
    user = make_user(current_score=650)

    result = engine.compute(user.id, persist=True, emit_event=True)

    assert result.changed is False
    assert db.query(OutboxEvent).count() == 0
    assert db.query(CreditScoreEvent).count() == 0


def test_on_time_repayment_raises_history(engine, lifecycle, make_loan, user, clock):
    """600 + 35 + 30 + 10 + 1.5 + 10 = 686.5 -> 686"""
    loan = make_loan(user, state=LoanState.DISBURSED)
    clock.advance(10)
    repay_in_full(lifecycle, loan, clock.today)

    history = engine.snapshot(user.id)
    assert history.on_time_payment_rate == Decimal("1")
    assert history.recent_on_time_count == 1
    assert history.outstanding_principal_cents == 0

    assert engine.compute(user.id).new_score == 686


def test_late_repayment_counts_against_history(engine, lifecycle, make_loan, user, clock):
    loan = make_loan(user, state=LoanState.DISBURSED)
    clock.advance(40)
    repay_in_full(lifecycle, loan, clock.today)

    history = engine.snapshot(user.id)
    assert history.on_time_payment_rate == Decimal("0")
    assert history.recent_on_time_count == 0


def test_overdue_loan_marks_delinquency_and_utilization(engine, lifecycle, make_loan, user, clock):
    loan = make_loan(user, state=LoanState.DISBURSED)
    clock.advance(31)
    lifecycle.mark_as_overdue(loan.id)

    history = engine.snapshot(user.id)
    assert history.has_recent_delinquency is True
    assert history.outstanding_principal_cents == 1_000_000
    assert history.utilization_ratio == Decimal("0.2")

    result = engine.compute(user.id)
    assert result.breakdown["behavior"].normalized == Decimal("-100")
    assert result.new_score < 650


def test_unknown_user(engine):
    with pytest.raises(NotFound):
        engine.compute(uuid.uuid4())
