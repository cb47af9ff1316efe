"""SQLAlchemy ORM models for loans, payments, scoring and the transactional outbox"""

import uuid
from datetime import date
from typing import Type

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship, validates

from lending_core.config import settings
from lending_core.domain.exceptions import ValidationError, InvalidTerm
from lending_core.domain.models import (
    Balances,
    KycStatus,
    LoanState,
    PaymentDirection,
    PaymentState,
    Product,
    ScoreReason,
)
from lending_core.domain.products import LONGTERM_TERMS, select_product, validate_amount_for_product
from lending_core.utils.date_utils import utcnow

Base = declarative_base()


def _enum(enum_cls: Type) -> Enum:
    """Store enum values (not member names) as plain strings"""
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class User(Base):
    """Borrower account (only the fields the lending core reads)"""

    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    kyc_status = Column(_enum(KycStatus), nullable=False, default=KycStatus.PENDING)
    credit_limit_cents = Column(BigInteger, nullable=False, default=0)
    current_score = Column(Integer, nullable=False, default=600)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    loans = relationship("Loan", back_populates="user", cascade="all, delete-orphan")
    credit_score_events = relationship("CreditScoreEvent", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("credit_limit_cents >= 0", name="users_credit_limit_non_negative"),
        CheckConstraint("current_score BETWEEN 300 AND 900", name="users_score_in_range"),
    )

    @property
    def kyc_approved(self) -> bool:
        return self.kyc_status == KycStatus.APPROVED


class Loan(Base):
    """Borrowing agreement; state only changes through LoanLifecycle"""

    __tablename__ = "loans"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    term_days = Column(Integer, nullable=False)
    product = Column(_enum(Product), nullable=False)
    state = Column(_enum(LoanState), nullable=False, default=LoanState.PENDING, index=True)
    due_on = Column(Date, nullable=True, index=True)
    principal_outstanding_cents = Column(BigInteger, nullable=False, default=0)
    interest_accrued_cents = Column(BigInteger, nullable=False, default=0)
    penalty_accrued_cents = Column(BigInteger, nullable=False, default=0)
    apr = Column(Numeric(10, 4), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="loans")
    payments = relationship("Payment", back_populates="loan", cascade="all, delete-orphan", order_by="Payment.created_at")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="loans_amount_positive"),
        CheckConstraint("term_days > 0", name="loans_term_positive"),
        CheckConstraint(
            "product <> 'longterm' OR term_days IN (270, 365)",
            name="loans_longterm_term_validation",
        ),
        Index("ix_loans_user_id_state", "user_id", "state"),
        Index("ix_loans_state_due_on", "state", "due_on"),
    )

    @validates("amount_cents", "principal_outstanding_cents", "interest_accrued_cents", "penalty_accrued_cents")
    def _validate_non_negative(self, key: str, value: int) -> int:
        if value is None or value < 0:
            raise ValidationError(key, "must be greater than or equal to 0")
        return value

    @validates("term_days")
    def _validate_term(self, key: str, value: int) -> int:
        if value is None or value <= 0:
            raise ValidationError(key, "must be positive")
        return value

    @property
    def balances(self) -> Balances:
        return Balances(
            principal_cents=self.principal_outstanding_cents,
            interest_cents=self.interest_accrued_cents,
            penalty_cents=self.penalty_accrued_cents,
        )

    @balances.setter
    def balances(self, value: Balances) -> None:
        self.principal_outstanding_cents = value.principal_cents
        self.interest_accrued_cents = value.interest_cents
        self.penalty_accrued_cents = value.penalty_cents

    @property
    def total_outstanding_cents(self) -> int:
        """Amount owed: principal + interest + penalty"""
        return self.balances.total_cents

    def days_past_due(self, today: date) -> int:
        """Whole days since the due date; 0 when not yet due or no due date"""
        if self.due_on is None or today <= self.due_on:
            return 0
        return (today - self.due_on).days

    def validate(self) -> None:
        """Cross-field invariants checked before every insert/update"""
        product = Product(self.product) if self.product is not None else None
        if product is Product.LONGTERM and self.term_days not in LONGTERM_TERMS:
            raise ValidationError("term_days", "must be 270 or 365 days for longterm loans")

        try:
            expected = select_product(self.term_days)
        except InvalidTerm as e:
            raise ValidationError("term_days", str(e)) from e

        if product is not None and product is not expected:
            raise ValidationError("term_days", f"invalid for product type {product.value}")

        validate_amount_for_product(self.amount_cents, expected)


@event.listens_for(Loan, "before_insert")
@event.listens_for(Loan, "before_update")
def _validate_loan(mapper, connection, target: Loan) -> None:
    target.validate()


class Payment(Base):
    """Money movement against a loan"""

    __tablename__ = "payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(UUID(as_uuid=True), ForeignKey("loans.id", ondelete="CASCADE"), nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    direction = Column(_enum(PaymentDirection), nullable=False, default=PaymentDirection.REPAYMENT)
    state = Column(_enum(PaymentState), nullable=False, default=PaymentState.PENDING, index=True)
    gateway_ref = Column(Text, nullable=True, unique=True)
    posted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    loan = relationship("Loan", back_populates="payments")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="payments_amount_positive"),
        Index("ix_payments_loan_id_state", "loan_id", "state"),
    )

    @validates("amount_cents")
    def _validate_amount(self, key: str, value: int) -> int:
        if value is None or value <= 0:
            raise ValidationError(key, "must be positive")
        return value

    @validates("gateway_ref")
    def _normalize_gateway_ref(self, key: str, value: str | None) -> str | None:
        # Blank references are stored as NULL so they don't collide on the unique index
        return value or None


class IdempotencyKey(Base):
    """(key, scope) reservation bound once to a resource"""

    __tablename__ = "idempotency_keys"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    key = Column(Text, nullable=False)
    scope = Column(Text, nullable=False)
    resource_type = Column(Text, nullable=False)
    resource_id = Column(UUID(as_uuid=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("key", "scope", name="uq_idempotency_keys_key_scope"),
        Index("ix_idempotency_keys_resource", "resource_type", "resource_id"),
    )


class OutboxEvent(Base):
    """Domain event written in the same transaction as the change it documents"""

    __tablename__ = "outbox_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, index=True)
    aggregate_type = Column(Text, nullable=False)
    aggregate_id = Column(UUID(as_uuid=True), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    headers = Column(JSON, nullable=False, default=dict)
    processed = Column(Boolean, nullable=False, default=False)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="outbox_events_attempts_non_negative"),
        Index("ix_outbox_events_aggregate", "aggregate_type", "aggregate_id"),
        Index("ix_outbox_events_processed_created_at", "processed", "created_at"),
    )

    # Drainer-side bookkeeping. The lending core never calls these after publish.

    @property
    def is_dead_letter(self) -> bool:
        return self.attempts >= settings.outbox_dead_letter_threshold

    @property
    def ready_for_retry(self) -> bool:
        return not self.processed and not self.is_dead_letter

    def mark_processed(self) -> None:
        self.processed = True

    def record_failed_attempt(self) -> None:
        self.attempts = (self.attempts or 0) + 1


class CreditScoreEvent(Base):
    """Append-only audit record of a score change"""

    __tablename__ = "credit_score_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    reason = Column(_enum(ScoreReason), nullable=False)
    delta = Column(Integer, nullable=False)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("User", back_populates="credit_score_events")

    __table_args__ = (
        CheckConstraint("delta <> 0", name="credit_score_events_delta_non_zero"),
        Index("ix_credit_score_events_user_id_created_at", "user_id", "created_at"),
    )

    @validates("delta")
    def _validate_delta(self, key: str, value: int) -> int:
        if not value:
            raise ValidationError(key, "must be other than 0")
        return value
