"""Repayment allocation across outstanding balance buckets"""

from lending_core.domain.exceptions import ValidationError
from lending_core.domain.models import Balances, PaymentAllocation


def allocate_payment(balances: Balances, amount_cents: int) -> PaymentAllocation:
    """
    Apply a cleared repayment to a loan's outstanding balances.

    Order: penalty first, then interest, then principal. Anything left after
    all three buckets reach zero is reported as unapplied; balances never go
    negative.

    Example:
        penalty=500, interest=1000, principal=10000, payment=3000
        -> penalty 500, interest 1000, principal 1500, remaining principal 8500
    """
    if amount_cents <= 0:
        raise ValidationError("amount_cents", "must be positive")

    remaining = amount_cents

    penalty_paid = min(remaining, balances.penalty_cents)
    remaining -= penalty_paid

    interest_paid = min(remaining, balances.interest_cents)
    remaining -= interest_paid

    principal_paid = min(remaining, balances.principal_cents)
    remaining -= principal_paid

    return PaymentAllocation(
        penalty_cents=penalty_paid,
        interest_cents=interest_paid,
        principal_cents=principal_paid,
        unapplied_cents=remaining,
        remaining=Balances(
            principal_cents=balances.principal_cents - principal_paid,
            interest_cents=balances.interest_cents - interest_paid,
            penalty_cents=balances.penalty_cents - penalty_paid,
        ),
    )
