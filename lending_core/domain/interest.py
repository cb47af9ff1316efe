"""Interest and APR calculation per product tier with exact decimal arithmetic"""

from decimal import Decimal, ROUND_HALF_EVEN

from lending_core.domain.exceptions import ValidationError
from lending_core.domain.models import InterestQuote, Product
from lending_core.domain.products import select_product

MICRO_RATE = Decimal("0.005")  # 0.5% per year of term
EXTENDED_MONTHLY_RATE = Decimal("0.0349")  # 3.49% per month
LONGTERM_MONTHLY_RATE = Decimal("0.03")  # 3.0% per month
DAYS_IN_YEAR = Decimal("365")
DAYS_IN_MONTH = Decimal("30.44")  # Average days per month

FOUR_PLACES = Decimal("0.0001")
TWO_PLACES = Decimal("0.01")
WHOLE = Decimal("1")


def raw_interest(amount_cents: int, term_days: int, product: Product) -> Decimal:
    """Unrounded interest in major units"""
    amount = Decimal(amount_cents) / Decimal("100")
    term = Decimal(term_days)

    if product is Product.MICRO:
        return amount * MICRO_RATE * (term / DAYS_IN_YEAR)
    if product is Product.EXTENDED:
        return amount * EXTENDED_MONTHLY_RATE * (term / DAYS_IN_MONTH)
    return amount * LONGTERM_MONTHLY_RATE * (term / DAYS_IN_MONTH)


def to_interest_cents(interest: Decimal) -> int:
    """Round to 4dp, then to whole minor units, half-to-even at both steps"""
    rounded = interest.quantize(FOUR_PLACES, rounding=ROUND_HALF_EVEN)
    return int((rounded * Decimal("100")).quantize(WHOLE, rounding=ROUND_HALF_EVEN))


def calculate_apr(interest_cents: int, amount_cents: int, term_days: int) -> Decimal:
    """APR = (interest / principal) * (365 / term) * 100, informational only"""
    rate = Decimal(interest_cents) / Decimal(amount_cents)
    annualized = rate * (DAYS_IN_YEAR / Decimal(term_days))
    return (annualized * Decimal("100")).quantize(TWO_PLACES, rounding=ROUND_HALF_EVEN)


def calculate_interest(amount_cents: int, term_days: int) -> InterestQuote:
    """
    Quote total interest and APR for a loan request.

    Example:
        ₱10,000 for 30 days -> micro
        10000 * 0.005 * (30/365) = 4.10958904...
        4dp -> 4.1096 -> 410.96 cents -> 411
    """
    if amount_cents <= 0:
        raise ValidationError("amount_cents", "must be positive")

    product = select_product(term_days)
    interest_cents = to_interest_cents(raw_interest(amount_cents, term_days, product))

    return InterestQuote(
        amount_cents=amount_cents,
        term_days=term_days,
        product=product,
        total_interest_cents=interest_cents,
        apr=calculate_apr(interest_cents, amount_cents, term_days),
    )
