"""Integration tests for idempotency key reservations"""

import uuid

import pytest
from sqlalchemy.orm import Session
from lending_core.domain.exceptions import IdempotencyConflict, ValidationError
from lending_core.infrastructure.database.models import IdempotencyKey, OutboxEvent
from lending_core.services.idempotency import IdempotencyGuard
from lending_core.services.outbox import OutboxPublisher

SCOPE = "loans/disburse"


def test_first_reservation_is_created(db: Session):
    guard = IdempotencyGuard(db)
    resource_id = uuid.uuid4()

    reservation = guard.reserve("req-1", SCOPE, "Loan", resource_id)
    db.commit()

    assert reservation.created is True
    assert reservation.resource_id == resource_id
    assert db.query(IdempotencyKey).count() == 1


def test_same_resource_is_a_replay(db: Session):
    guard = IdempotencyGuard(db)
    resource_id = uuid.uuid4()
    guard.reserve("req-1", SCOPE, "Loan", resource_id)
    db.commit()

    reservation = guard.reserve("req-1", SCOPE, "Loan", resource_id)

    assert reservation.created is False
    assert reservation.resource_type == "Loan"
    assert reservation.resource_id == resource_id
    assert db.query(IdempotencyKey).count() == 1


def test_different_resource_conflicts(db: Session):
    guard = IdempotencyGuard(db)
    guard.reserve("req-1", SCOPE, "Loan", uuid.uuid4())
    db.commit()

    with pytest.raises(IdempotencyConflict) as exc_info:
        guard.reserve("req-1", SCOPE, "Loan", uuid.uuid4())

    assert exc_info.value.key == "req-1"
    assert exc_info.value.scope == SCOPE


def test_different_resource_type_conflicts(db: Session):
    guard = IdempotencyGuard(db)
    resource_id = uuid.uuid4()
    guard.reserve("req-1", SCOPE, "Loan", resource_id)
    db.commit()

    with pytest.raises(IdempotencyConflict):
        guard.reserve("req-1", SCOPE, "Payment", resource_id)


def test_same_key_in_another_scope_is_independent(db: Session):
    guard = IdempotencyGuard(db)
    guard.reserve("req-1", SCOPE, "Loan", uuid.uuid4())
    db.commit()

    reservation = guard.reserve("req-1", "payments/refund", "Payment", uuid.uuid4())

    assert reservation.created is True


@pytest.mark.parametrize("key, scope, field", [("", SCOPE, "key"), ("req-1", "", "scope")])
def test_blank_key_or_scope_rejected(db: Session, key, scope, field):
    with pytest.raises(ValidationError) as exc_info:
        IdempotencyGuard(db).reserve(key, scope, "Loan", uuid.uuid4())

    assert exc_info.value.field == field


def test_rollback_releases_reservation(db: Session):
    """Test a reservation only survives if its transaction commits"""
    guard = IdempotencyGuard(db)
    resource_id = uuid.uuid4()
    guard.reserve("req-1", SCOPE, "Loan", resource_id)
    db.rollback()

    assert db.query(IdempotencyKey).count() == 0
    assert guard.reserve("req-1", SCOPE, "Loan", resource_id).created is True


def test_detected_duplicate_keeps_surrounding_work(db: Session):
    """Test the failed insert only rolls back its savepoint"""
    guard = IdempotencyGuard(db)
    resource_id = uuid.uuid4()
    guard.reserve("req-1", SCOPE, "Loan", resource_id)
    db.commit()

    OutboxPublisher(db).publish("loan.approved", "Loan", resource_id, {"loan_id": str(resource_id)})
    reservation = guard.reserve("req-1", SCOPE, "Loan", resource_id)
    db.commit()

    assert reservation.created is False
    assert db.query(OutboxEvent).count() == 1


def test_reservation_visible_to_other_sessions(db: Session, session_factory):
    resource_id = uuid.uuid4()
    IdempotencyGuard(db).reserve("req-1", SCOPE, "Loan", resource_id)
    db.commit()

    other = session_factory()
    try:
        with pytest.raises(IdempotencyConflict):
            IdempotencyGuard(other).reserve("req-1", SCOPE, "Loan", uuid.uuid4())
        other.rollback()
    finally:
        other.close()
