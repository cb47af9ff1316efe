"""Loan lifecycle state machine with locked, event-sourced transitions"""

import logging
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterator, Optional

from sqlalchemy.orm import Session

from lending_core.config import settings
from lending_core.domain.balances import allocate_payment
from lending_core.domain.exceptions import (
    GatewayError,
    GuardFailed,
    IdempotencyConflict,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from lending_core.domain.interest import calculate_interest
from lending_core.domain.models import (
    DisbursementResult,
    KycStatus,
    LoanState,
    PaymentDirection,
    PaymentState,
)
from lending_core.domain.products import validate_amount_for_product
from lending_core.infrastructure.clients.disbursement import DisbursementGateway
from lending_core.infrastructure.database.models import Loan, Payment
from lending_core.infrastructure.database.repositories import LoanRepository, PaymentRepository, UserRepository
from lending_core.infrastructure.database.session import unit_of_work
from lending_core.infrastructure.observability.logging import log_transition
from lending_core.infrastructure.observability.metrics import (
    gateway_failure_counter,
    gateway_latency_histogram,
    record_transition,
)
from lending_core.services.idempotency import IdempotencyGuard
from lending_core.services.outbox import OutboxPublisher, new_correlation_id
from lending_core.utils.date_utils import business_today, utcnow

LOAN_AGGREGATE = "Loan"
PAYMENT_AGGREGATE = "Payment"

REPAYABLE_STATES = tuple(state for state in LoanState if state.is_active or state.is_delinquent)


class LoanLifecycle:
    """
    Guarded transitions over a loan's state.

    Every operation runs as one transaction that first takes an exclusive
    row lock on the loan, re-reads its state, evaluates guards, mutates, and
    writes its outbox events. Any failure rolls the whole unit back, so a
    rejected transition never leaves a partial change or an orphaned event.

    Transitions:
        pending   -> approved | rejected
        approved  -> disbursed
        disbursed -> overdue
        disbursed | overdue -> defaulted
        any (except paid) -> paid, when the balance is exactly zero
    """

    def __init__(self, db: Session, clock: Callable[[], date] = business_today):
        self.db = db
        self.clock = clock
        self.loans = LoanRepository(db)
        self.payments = PaymentRepository(db)
        self.users = UserRepository(db)
        self.outbox = OutboxPublisher(db)
        self.idempotency = IdempotencyGuard(db)

    # Origination

    def originate(
        self,
        user_id: uuid.UUID,
        amount_cents: int,
        term_days: int,
        correlation_id: Optional[str] = None,
    ) -> Loan:
        """
        Create a pending loan with its tier, interest, APR and due date derived
        from the requested amount and term. The product is never client-supplied.
        """
        correlation_id = correlation_id or new_correlation_id()

        with self._operation("originate"):
            user = self.users.get_by_id(user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")

            quote = calculate_interest(amount_cents, term_days)
            validate_amount_for_product(amount_cents, quote.product)

            loan = self.loans.add(
                Loan(
                    user_id=user.id,
                    amount_cents=amount_cents,
                    term_days=term_days,
                    product=quote.product,
                    state=LoanState.PENDING,
                    due_on=self.clock() + timedelta(days=term_days),
                    principal_outstanding_cents=amount_cents,
                    interest_accrued_cents=quote.total_interest_cents,
                    penalty_accrued_cents=0,
                    apr=quote.apr,
                )
            )
            self._emit(
                loan,
                "loan.created",
                {
                    **self._loan_summary(loan),
                    "total_interest_cents": quote.total_interest_cents,
                    "apr": str(quote.apr),
                    "due_on": loan.due_on.isoformat(),
                },
                correlation_id,
            )

        log_transition(correlation_id, str(loan.id), "originate", "-", LoanState.PENDING.value)
        return loan

    # Transitions

    def approve(
        self,
        loan_id: uuid.UUID,
        actor_id: Optional[uuid.UUID] = None,
        correlation_id: Optional[str] = None,
    ) -> Loan:
        """pending -> approved; requires approved KYC and no overdue loans"""
        correlation_id = correlation_id or new_correlation_id()

        with self._locked("approve", loan_id) as loan:
            from_state = self._require_edge(loan, LoanState.APPROVED, "approve")

            if loan.user.kyc_status != KycStatus.APPROVED:
                raise GuardFailed("kyc_not_approved", "User KYC must be approved to approve loan")
            if self.loans.user_has_overdue_loans(loan.user_id):
                raise GuardFailed("has_overdue_loans", "User has overdue loans, cannot approve new loan")

            loan.state = LoanState.APPROVED
            self._emit(
                loan,
                "loan.approved",
                {**self._loan_summary(loan), "approved_at": utcnow().isoformat()},
                correlation_id,
                actor_id=actor_id,
            )

        log_transition(correlation_id, str(loan_id), "approve", from_state.value, LoanState.APPROVED.value)
        return loan

    def reject(
        self,
        loan_id: uuid.UUID,
        reason: str,
        actor_id: Optional[uuid.UUID] = None,
        correlation_id: Optional[str] = None,
    ) -> Loan:
        """pending -> rejected"""
        correlation_id = correlation_id or new_correlation_id()

        with self._locked("reject", loan_id) as loan:
            from_state = self._require_edge(loan, LoanState.REJECTED, "reject")

            loan.state = LoanState.REJECTED
            self._emit(
                loan,
                "loan.rejected",
                {**self._loan_summary(loan), "reason": reason, "rejected_at": utcnow().isoformat()},
                correlation_id,
                actor_id=actor_id,
            )

        log_transition(correlation_id, str(loan_id), "reject", from_state.value, LoanState.REJECTED.value)
        return loan

    def disburse(
        self,
        loan_id: uuid.UUID,
        gateway: DisbursementGateway,
        idempotency_key: str,
        correlation_id: Optional[str] = None,
    ) -> DisbursementResult:
        """
        approved -> disbursed, at most once per idempotency key.

        Flow:
        1. Lock the loan
        2. Reserve (idempotency_key, "loans/disburse") for this loan
           - already reserved for this loan: return the recorded outcome,
             no gateway call, no events
           - reserved for another loan: IdempotencyConflict
        3. Emit loan.disbursement_requested
        4. Call the gateway for the gateway reference
        5. Mark disbursed, record a pending disbursement payment
        6. Emit loan.disbursed

        A gateway failure rolls back the reservation along with everything
        else, so retrying with the same key is safe.
        """
        correlation_id = correlation_id or new_correlation_id()

        with self._locked("disburse", loan_id) as loan:
            reservation = self.idempotency.reserve(
                idempotency_key, settings.disburse_scope, LOAN_AGGREGATE, loan.id
            )
            if not reservation.created:
                return self._replay_disbursement(loan)

            from_state = self._require_edge(loan, LoanState.DISBURSED, "disburse")

            self._emit(
                loan,
                "loan.disbursement_requested",
                {"loan_id": str(loan.id), "amount": loan.amount_cents, "correlation_id": correlation_id},
                correlation_id,
            )

            gateway_ref = self._call_gateway(gateway, loan)

            loan.state = LoanState.DISBURSED
            payment = self.payments.create_payment(
                loan,
                amount_cents=loan.amount_cents,
                direction=PaymentDirection.DISBURSEMENT,
                gateway_ref=gateway_ref,
                posted_at=utcnow(),
            )
            self._emit(
                loan,
                "loan.disbursed",
                {
                    "loan_id": str(loan.id),
                    "user_id": str(loan.user_id),
                    "amount": loan.amount_cents,
                    "payment_id": str(payment.id),
                    "gateway_ref": gateway_ref,
                    "disbursed_at": utcnow().isoformat(),
                },
                correlation_id,
                gateway_ref=gateway_ref,
            )
            result = DisbursementResult(
                loan_id=loan.id,
                payment_id=payment.id,
                gateway_ref=gateway_ref,
                amount_cents=loan.amount_cents,
                state=LoanState.DISBURSED,
            )

        log_transition(correlation_id, str(loan_id), "disburse", from_state.value, LoanState.DISBURSED.value)
        return result

    def mark_as_paid(self, loan_id: uuid.UUID, correlation_id: Optional[str] = None) -> Loan:
        """any -> paid; the outstanding balance must be exactly zero"""
        correlation_id = correlation_id or new_correlation_id()

        with self._locked("mark_as_paid", loan_id) as loan:
            from_state = self._apply_paid(loan, correlation_id)

        log_transition(correlation_id, str(loan_id), "mark_as_paid", from_state.value, LoanState.PAID.value)
        return loan

    def mark_as_overdue(self, loan_id: uuid.UUID, correlation_id: Optional[str] = None) -> Loan:
        """disbursed -> overdue; due date passed with a balance still owed"""
        correlation_id = correlation_id or new_correlation_id()
        today = self.clock()

        with self._locked("mark_as_overdue", loan_id) as loan:
            from_state = self._require_edge(loan, LoanState.OVERDUE, "mark as overdue")

            days_overdue = loan.days_past_due(today)
            if days_overdue <= 0:
                raise GuardFailed("not_past_due", f"Loan is not past its due date ({loan.due_on})")
            if loan.total_outstanding_cents <= 0:
                raise GuardFailed("zero_balance", "Loan has no outstanding balance")

            loan.state = LoanState.OVERDUE
            self._emit(
                loan,
                "loan.overdue",
                {
                    "loan_id": str(loan.id),
                    "user_id": str(loan.user_id),
                    "principal_cents": loan.amount_cents,
                    "outstanding_balance_cents": loan.total_outstanding_cents,
                    "days_overdue": days_overdue,
                    "overdue_at": utcnow().isoformat(),
                },
                correlation_id,
            )

        log_transition(correlation_id, str(loan_id), "mark_as_overdue", from_state.value, LoanState.OVERDUE.value)
        return loan

    def mark_as_defaulted(self, loan_id: uuid.UUID, correlation_id: Optional[str] = None) -> Loan:
        """disbursed | overdue -> defaulted; more than 30 days past due"""
        correlation_id = correlation_id or new_correlation_id()
        today = self.clock()

        with self._locked("mark_as_defaulted", loan_id) as loan:
            from_state = self._require_edge(loan, LoanState.DEFAULTED, "mark as defaulted")

            days_past_due = loan.days_past_due(today)
            if days_past_due <= settings.default_threshold_days:
                raise GuardFailed(
                    "default_threshold_not_reached",
                    f"Loan has not reached defaulted threshold ({days_past_due} days overdue)",
                )

            loan.state = LoanState.DEFAULTED
            self._emit(
                loan,
                "loan.defaulted",
                {
                    "loan_id": str(loan.id),
                    "user_id": str(loan.user_id),
                    "principal_cents": loan.amount_cents,
                    "outstanding_balance_cents": loan.total_outstanding_cents,
                    "days_overdue": days_past_due,
                    "defaulted_at": utcnow().isoformat(),
                },
                correlation_id,
            )

        log_transition(correlation_id, str(loan_id), "mark_as_defaulted", from_state.value, LoanState.DEFAULTED.value)
        return loan

    # Reconciliation

    def record_repayment(
        self,
        loan_id: uuid.UUID,
        amount_cents: int,
        gateway_ref: Optional[str] = None,
        posted_at: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> Payment:
        """
        Record an incoming repayment as pending until reconciliation settles it.

        `posted_at` is the time the gateway reports the funds were received;
        it decides whether the repayment counts as on time for scoring.
        """
        correlation_id = correlation_id or new_correlation_id()

        with self._locked("record_repayment", loan_id) as loan:
            if loan.state not in REPAYABLE_STATES:
                raise InvalidStateTransition(
                    loan.state.value, f"Cannot record repayment for loan in state: {loan.state.value}"
                )

            payment = self.payments.create_payment(
                loan,
                amount_cents=amount_cents,
                direction=PaymentDirection.REPAYMENT,
                gateway_ref=gateway_ref,
                posted_at=posted_at or utcnow(),
            )
            self._emit_payment(payment, "payment.recorded", {}, correlation_id)

        return payment

    def settle_payment(
        self,
        payment_id: uuid.UUID,
        cleared: bool,
        correlation_id: Optional[str] = None,
    ) -> Payment:
        """
        Move a pending payment to cleared or failed.

        A cleared repayment pays down penalty, then interest, then principal;
        when the loan's balance reaches zero it moves to paid in the same
        transaction.
        """
        correlation_id = correlation_id or new_correlation_id()

        payment = self.payments.get_by_id(payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found")

        with self._locked("settle_payment", payment.loan_id) as loan:
            payment = self.payments.lock_for_update(payment_id)
            if PaymentState(payment.state).is_settled:
                raise InvalidStateTransition(
                    payment.state.value, f"Cannot settle payment in state: {payment.state.value}"
                )

            if not cleared:
                payment.state = PaymentState.FAILED
                self._emit_payment(payment, "payment.failed", {}, correlation_id)
                return payment

            payment.state = PaymentState.CLEARED
            details: Dict[str, Any] = {}
            if payment.direction == PaymentDirection.REPAYMENT:
                allocation = allocate_payment(loan.balances, payment.amount_cents)
                loan.balances = allocation.remaining
                details = {
                    "applied_penalty_cents": allocation.penalty_cents,
                    "applied_interest_cents": allocation.interest_cents,
                    "applied_principal_cents": allocation.principal_cents,
                    "unapplied_cents": allocation.unapplied_cents,
                    "outstanding_balance_cents": allocation.remaining.total_cents,
                }
            self._emit_payment(payment, "payment.cleared", details, correlation_id)

            if (
                payment.direction == PaymentDirection.REPAYMENT
                and loan.total_outstanding_cents == 0
                and loan.state != LoanState.PAID
            ):
                self._apply_paid(loan, correlation_id)

        return payment

    # Internals

    @contextmanager
    def _operation(self, transition: str) -> Iterator[None]:
        """One committed-or-rolled-back unit, with outcome metrics and failure logs"""
        try:
            with unit_of_work(self.db):
                yield
        except InvalidStateTransition as e:
            record_transition(transition, "invalid_transition")
            logging.warning(f"Invalid transition: {e}", extra={"transition": transition, "state": e.current_state})
            raise
        except GuardFailed as e:
            record_transition(transition, "guard_failed")
            logging.warning(f"Guard failed: {e}", extra={"transition": transition, "condition": e.condition})
            raise
        except IdempotencyConflict:
            record_transition(transition, "conflict")
            raise
        except (ValidationError, NotFound) as e:
            record_transition(transition, "rejected")
            logging.warning(f"Rejected: {e}", extra={"transition": transition})
            raise
        except Exception as e:
            record_transition(transition, "error")
            logging.error(f"Transition failed: {e}", extra={"transition": transition})
            raise
        else:
            record_transition(transition, "committed")

    @contextmanager
    def _locked(self, transition: str, loan_id: uuid.UUID) -> Iterator[Loan]:
        with self._operation(transition):
            loan = self.loans.lock_for_update(loan_id)
            if loan is None:
                raise NotFound(f"Loan {loan_id} not found")
            yield loan

    def _require_edge(self, loan: Loan, target: LoanState, verb: str) -> LoanState:
        """Raise InvalidStateTransition unless the graph has current -> target"""
        current = LoanState(loan.state)
        if not current.can_transition_to(target):
            raise InvalidStateTransition(current.value, f"Cannot {verb} loan in state: {current.value}")
        return current

    def _apply_paid(self, loan: Loan, correlation_id: str) -> LoanState:
        from_state = self._require_edge(loan, LoanState.PAID, "mark as paid")
        if loan.total_outstanding_cents != 0:
            raise GuardFailed(
                "outstanding_balance",
                f"Cannot mark as paid: outstanding balance is {loan.total_outstanding_cents} cents",
            )

        loan.state = LoanState.PAID
        self._emit(
            loan,
            "loan.paid",
            {
                "loan_id": str(loan.id),
                "user_id": str(loan.user_id),
                "principal_cents": loan.amount_cents,
                "total_paid_cents": self._total_repaid(loan),
                "paid_at": utcnow().isoformat(),
            },
            correlation_id,
        )
        return from_state

    def _total_repaid(self, loan: Loan) -> int:
        return sum(
            p.amount_cents
            for p in loan.payments
            if p.direction == PaymentDirection.REPAYMENT and p.state == PaymentState.CLEARED
        )

    def _replay_disbursement(self, loan: Loan) -> DisbursementResult:
        payment = self.payments.get_disbursement(loan.id)
        if payment is None:
            raise InvalidStateTransition(
                LoanState(loan.state).value, "Idempotency key is reserved but no disbursement was recorded"
            )
        logging.info(
            "Disbursement replayed",
            extra={"loan_id": str(loan.id), "payment_id": str(payment.id), "step": "disburse_replay"},
        )
        return DisbursementResult(
            loan_id=loan.id,
            payment_id=payment.id,
            gateway_ref=payment.gateway_ref,
            amount_cents=payment.amount_cents,
            state=LoanState.DISBURSED,
            replayed=True,
        )

    def _call_gateway(self, gateway: DisbursementGateway, loan: Loan) -> str:
        try:
            with gateway_latency_histogram.time():
                return gateway.disburse(loan.amount_cents, loan.user)
        except GatewayError:
            gateway_failure_counter.inc()
            raise
        except Exception as e:
            gateway_failure_counter.inc()
            raise GatewayError(f"Disbursement gateway failed: {e}") from e

    def _loan_summary(self, loan: Loan) -> Dict[str, Any]:
        return {
            "loan_id": str(loan.id),
            "user_id": str(loan.user_id),
            "amount": loan.amount_cents,
            "term_days": loan.term_days,
            "product": loan.product.value,
        }

    def _emit(
        self,
        loan: Loan,
        name: str,
        payload: Dict[str, Any],
        correlation_id: str,
        **headers: Any,
    ) -> None:
        clean = {k: str(v) for k, v in headers.items() if v is not None}
        self.outbox.publish(
            name=name,
            aggregate_type=LOAN_AGGREGATE,
            aggregate_id=loan.id,
            payload=payload,
            headers={"correlation_id": correlation_id, **clean},
        )

    def _emit_payment(self, payment: Payment, name: str, details: Dict[str, Any], correlation_id: str) -> None:
        self.outbox.publish(
            name=name,
            aggregate_type=PAYMENT_AGGREGATE,
            aggregate_id=payment.id,
            payload={
                "payment_id": str(payment.id),
                "loan_id": str(payment.loan_id),
                "amount": payment.amount_cents,
                "direction": PaymentDirection(payment.direction).value,
                "state": PaymentState(payment.state).value,
                "gateway_ref": payment.gateway_ref,
                **details,
            },
            headers={"correlation_id": correlation_id},
        )
