"""Data access layer for lending entities"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lending_core.config import settings
from lending_core.domain.exceptions import ValidationError
from lending_core.domain.models import LoanState, PaymentDirection, PaymentState, UserHistory
from lending_core.infrastructure.database.models import Loan, OutboxEvent, Payment, User
from lending_core.utils.date_utils import days_ago, months_ago, start_of_day_utc

ACTIVE_STATES = tuple(state for state in LoanState if state.is_active)
DELINQUENT_STATES = tuple(state for state in LoanState if state.is_delinquent)


class UserRepository:
    """Repository for borrower accounts"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()


class LoanRepository:
    """Repository for loans"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, loan: Loan) -> Loan:
        """Stage a new loan and flush to run entity validation and get its ID"""
        self.db.add(loan)
        self.db.flush()
        return loan

    def get_by_id(self, loan_id: uuid.UUID) -> Optional[Loan]:
        return self.db.query(Loan).filter(Loan.id == loan_id).first()

    def lock_for_update(self, loan_id: uuid.UUID) -> Optional[Loan]:
        """
        SELECT ... FOR UPDATE on one loan, refreshing any cached instance.

        The row lock is held until the surrounding transaction ends, so
        concurrent transitions on the same loan are serialized and each sees
        the state committed by the previous one.
        """
        return (
            self.db.query(Loan)
            .filter(Loan.id == loan_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def user_has_overdue_loans(self, user_id: uuid.UUID) -> bool:
        query = self.db.query(Loan.id).filter(Loan.user_id == user_id, Loan.state == LoanState.OVERDUE)
        return self.db.query(query.exists()).scalar()


class PaymentRepository:
    """Repository for payments"""

    def __init__(self, db: Session):
        self.db = db

    def create_payment(
        self,
        loan: Loan,
        amount_cents: int,
        direction: PaymentDirection,
        gateway_ref: str | None,
        posted_at: datetime,
    ) -> Payment:
        """
        Create a pending payment against a loan.

        The insert runs in a SAVEPOINT so a reused gateway reference surfaces
        as a ValidationError without aborting the caller's transaction.
        """
        payment = Payment(
            loan_id=loan.id,
            amount_cents=amount_cents,
            direction=direction,
            state=PaymentState.PENDING,
            gateway_ref=gateway_ref,
            posted_at=posted_at,
        )
        try:
            with self.db.begin_nested():
                self.db.add(payment)
        except IntegrityError as e:
            if payment.gateway_ref is None:
                raise
            raise ValidationError("gateway_ref", "has already been taken") from e
        return payment

    def get_by_id(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.id == payment_id).first()

    def lock_for_update(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.id == payment_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def get_disbursement(self, loan_id: uuid.UUID) -> Optional[Payment]:
        """The payment created when the loan was disbursed, if any"""
        return (
            self.db.query(Payment)
            .filter(Payment.loan_id == loan_id, Payment.direction == PaymentDirection.DISBURSEMENT)
            .order_by(Payment.created_at)
            .first()
        )


class OutboxRepository:
    """Queries an external drainer runs against the outbox table"""

    def __init__(self, db: Session):
        self.db = db

    def ready_for_retry(self, limit: int = 100) -> List[OutboxEvent]:
        """Unprocessed events still under the dead-letter threshold, oldest first"""
        return (
            self.db.query(OutboxEvent)
            .filter(
                OutboxEvent.processed.is_(False),
                OutboxEvent.attempts < settings.outbox_dead_letter_threshold,
            )
            .order_by(OutboxEvent.created_at)
            .limit(limit)
            .all()
        )

    def dead_letters(self) -> List[OutboxEvent]:
        return (
            self.db.query(OutboxEvent)
            .filter(
                OutboxEvent.processed.is_(False),
                OutboxEvent.attempts >= settings.outbox_dead_letter_threshold,
            )
            .order_by(OutboxEvent.created_at)
            .all()
        )

    def for_aggregate(self, aggregate_type: str, aggregate_id: uuid.UUID) -> List[OutboxEvent]:
        return (
            self.db.query(OutboxEvent)
            .filter(OutboxEvent.aggregate_type == aggregate_type, OutboxEvent.aggregate_id == aggregate_id)
            .order_by(OutboxEvent.created_at)
            .all()
        )


class ScoreHistoryRepository:
    """Assembles the scoring snapshot for a user from stored loans and payments"""

    def __init__(self, db: Session):
        self.db = db

    def build(self, user: User, as_of: date) -> UserHistory:
        """
        Capture everything the scoring function needs as of `as_of`.

        - On-time rate: cleared repayments posted in the last 12 months whose
          posting date is on or before the loan's due date. Neutral 0.5 when
          there are none.
        - Utilization: outstanding principal on disbursed/overdue loans.
        - Delinquency: any overdue/defaulted loan touched in the last 90 days.
        - On-time count: paid loans with an on-time repayment in the last 90 days.
        """
        year_cutoff = start_of_day_utc(months_ago(as_of, 12))
        quarter_cutoff = start_of_day_utc(days_ago(as_of, 90))

        repayments = (
            self.db.query(Payment, Loan)
            .join(Loan, Payment.loan_id == Loan.id)
            .filter(
                Loan.user_id == user.id,
                Payment.direction == PaymentDirection.REPAYMENT,
                Payment.state == PaymentState.CLEARED,
                Payment.posted_at >= year_cutoff,
            )
            .all()
        )

        if repayments:
            on_time = sum(1 for payment, loan in repayments if _is_on_time(payment, loan))
            on_time_rate = Decimal(on_time) / Decimal(len(repayments))
        else:
            on_time_rate = Decimal("0.5")

        recent_on_time_loans = {
            loan.id
            for payment, loan in repayments
            if loan.state == LoanState.PAID
            and _posted_on_or_after(payment, quarter_cutoff.date())
            and _is_on_time(payment, loan)
        }

        outstanding_principal = (
            self.db.query(func.coalesce(func.sum(Loan.principal_outstanding_cents), 0))
            .filter(Loan.user_id == user.id, Loan.state.in_(ACTIVE_STATES))
            .scalar()
        )

        delinquent = self.db.query(
            self.db.query(Loan.id)
            .filter(
                Loan.user_id == user.id,
                Loan.state.in_(DELINQUENT_STATES),
                Loan.updated_at >= quarter_cutoff,
            )
            .exists()
        ).scalar()

        return UserHistory(
            on_time_payment_rate=on_time_rate,
            outstanding_principal_cents=int(outstanding_principal),
            credit_limit_cents=user.credit_limit_cents,
            account_age_days=(as_of - user.created_at.date()).days,
            has_recent_delinquency=bool(delinquent),
            recent_on_time_count=len(recent_on_time_loans),
            kyc_approved=user.kyc_approved,
        )


def _is_on_time(payment: Payment, loan: Loan) -> bool:
    return loan.due_on is not None and payment.posted_at.date() <= loan.due_on


def _posted_on_or_after(payment: Payment, day: date) -> bool:
    return payment.posted_at.date() >= day
