"""Term-to-product tier selection and per-tier amount bounds"""

from typing import Dict, Tuple

from lending_core.config import settings
from lending_core.domain.exceptions import InvalidTerm, ValidationError
from lending_core.domain.models import Product

MICRO_TERMS = range(1, 61)
EXTENDED_TERMS = range(61, 181)
LONGTERM_TERMS = frozenset({270, 365})


def select_product(term_days: int) -> Product:
    """
    Map a loan term to its product tier.

    Tiers:
    - 1-60 days:    micro
    - 61-180 days:  extended
    - 270 or 365:   longterm (exact values only)

    Anything else, including 181-269, 271-364, >365 and non-positive terms,
    raises InvalidTerm.
    """
    if term_days <= 0:
        raise InvalidTerm(term_days, "term_days must be positive")

    # Longterm first: exact values only
    if term_days in LONGTERM_TERMS:
        return Product.LONGTERM
    if term_days in MICRO_TERMS:
        return Product.MICRO
    if term_days in EXTENDED_TERMS:
        return Product.EXTENDED

    raise InvalidTerm(term_days)


def amount_bounds(product: Product) -> Tuple[int, int]:
    """Inclusive (min, max) principal in minor units for a tier"""
    bounds: Dict[Product, Tuple[int, int]] = {
        Product.MICRO: (settings.micro_min_cents, settings.micro_max_cents),
        Product.EXTENDED: (settings.extended_min_cents, settings.extended_max_cents),
        Product.LONGTERM: (settings.longterm_min_cents, settings.longterm_max_cents),
    }
    return bounds[product]


def validate_amount_for_product(amount_cents: int, product: Product) -> None:
    """Raise ValidationError when the principal falls outside the tier's bounds"""
    if amount_cents <= 0:
        raise ValidationError("amount_cents", "must be positive")

    low, high = amount_bounds(product)
    if not low <= amount_cents <= high:
        raise ValidationError(
            "amount_cents",
            f"must be between {low} and {high} for {product.value} loans (got {amount_cents})",
        )
