"""Domain models - pure Python enums and dataclasses representing business entities"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet


class Product(str, Enum):
    """Loan product tier, derived from term length"""

    MICRO = "micro"
    EXTENDED = "extended"
    LONGTERM = "longterm"


class LoanState(str, Enum):
    """Loan lifecycle states"""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    PAID = "paid"
    OVERDUE = "overdue"
    DEFAULTED = "defaulted"

    @property
    def is_active(self) -> bool:
        """Funds are out and the loan is accruing against the borrower"""
        return self in (LoanState.DISBURSED, LoanState.OVERDUE)

    @property
    def is_delinquent(self) -> bool:
        return self in (LoanState.OVERDUE, LoanState.DEFAULTED)

    def can_transition_to(self, target: "LoanState") -> bool:
        return target in LOAN_TRANSITIONS[self]


# Declared edges of the loan state machine. Any state may move to PAID once
# its balance is zero; PAID itself has no outgoing edges.
LOAN_TRANSITIONS: Dict[LoanState, FrozenSet[LoanState]] = {
    LoanState.PENDING: frozenset({LoanState.APPROVED, LoanState.REJECTED, LoanState.PAID}),
    LoanState.APPROVED: frozenset({LoanState.DISBURSED, LoanState.PAID}),
    LoanState.REJECTED: frozenset({LoanState.PAID}),
    LoanState.DISBURSED: frozenset({LoanState.OVERDUE, LoanState.DEFAULTED, LoanState.PAID}),
    LoanState.OVERDUE: frozenset({LoanState.DEFAULTED, LoanState.PAID}),
    LoanState.DEFAULTED: frozenset({LoanState.PAID}),
    LoanState.PAID: frozenset(),
}


class PaymentState(str, Enum):
    """Money movement states"""

    PENDING = "pending"
    CLEARED = "cleared"
    FAILED = "failed"

    @property
    def is_settled(self) -> bool:
        return self is not PaymentState.PENDING


class PaymentDirection(str, Enum):
    """Whether a payment sends funds to the borrower or collects from them"""

    DISBURSEMENT = "disbursement"
    REPAYMENT = "repayment"


class KycStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ScoreReason(str, Enum):
    """Why a credit score changed"""

    ON_TIME_PAYMENT = "on_time_payment"
    OVERDUE = "overdue"
    UTILIZATION = "utilization"
    KYC_BONUS = "kyc_bonus"
    DEFAULT = "default"
    RECOMPUTE = "recompute"


@dataclass(frozen=True)
class InterestQuote:
    """Interest and APR for an (amount, term) pair"""

    amount_cents: int
    term_days: int
    product: Product
    total_interest_cents: int
    apr: Decimal


@dataclass(frozen=True)
class Balances:
    """Outstanding amounts owed on a loan"""

    principal_cents: int
    interest_cents: int
    penalty_cents: int

    @property
    def total_cents(self) -> int:
        return self.principal_cents + self.interest_cents + self.penalty_cents


@dataclass(frozen=True)
class PaymentAllocation:
    """How a cleared repayment was split across balance buckets"""

    penalty_cents: int
    interest_cents: int
    principal_cents: int
    unapplied_cents: int
    remaining: Balances


@dataclass(frozen=True)
class UserHistory:
    """Snapshot of a borrower's record used for scoring"""

    on_time_payment_rate: Decimal  # 12-month on-time rate in [0, 1]
    outstanding_principal_cents: int
    credit_limit_cents: int
    account_age_days: int
    has_recent_delinquency: bool  # overdue/defaulted loan within 90 days
    recent_on_time_count: int  # loans paid on time within 90 days
    kyc_approved: bool

    @property
    def utilization_ratio(self) -> Decimal:
        if self.credit_limit_cents == 0:
            return Decimal("1.0")
        return Decimal(self.outstanding_principal_cents) / Decimal(self.credit_limit_cents)


@dataclass(frozen=True)
class ScoreComponent:
    """One weighted input to the credit score"""

    raw_value: Decimal | int | bool
    normalized: Decimal
    weight: Decimal

    @property
    def contribution(self) -> Decimal:
        return self.normalized * self.weight


@dataclass(frozen=True)
class ScoreResult:
    """Outcome of a scoring run against a stored user"""

    user_id: uuid.UUID
    old_score: int
    new_score: int
    breakdown: Dict[str, ScoreComponent]

    @property
    def changed(self) -> bool:
        return self.new_score != self.old_score

    @property
    def delta(self) -> int:
        return self.new_score - self.old_score


@dataclass(frozen=True)
class Reservation:
    """Result of an idempotency reservation"""

    created: bool
    resource_type: str
    resource_id: uuid.UUID


@dataclass(frozen=True)
class DisbursementResult:
    """Observable outcome of a disbursement; identical on replay"""

    loan_id: uuid.UUID
    payment_id: uuid.UUID
    gateway_ref: str
    amount_cents: int
    state: LoanState
    replayed: bool = field(default=False, compare=False)
