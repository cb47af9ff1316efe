"""Credit scoring engine - deterministic, rule-based creditworthiness score"""

from decimal import Decimal
from typing import Dict

from lending_core.config import settings
from lending_core.domain.models import ScoreComponent, UserHistory

UPPER = Decimal("100")
LOWER = Decimal("-100")

UTILIZATION_CEILING = Decimal("0.9")
TENURE_FLOOR_DAYS = 7
TENURE_CEILING_DAYS = 365
TENURE_FLOOR_SCORE = Decimal("-50")
TENURE_SLOPE_DAYS = Decimal("357")  # 150 points over 357 days


def _clamp(value: Decimal, low: Decimal = LOWER, high: Decimal = UPPER) -> Decimal:
    return max(low, min(high, value))


def payment_history_component(on_time_rate: Decimal) -> Decimal:
    """Map on-time rate [0, 1] linearly onto [-100, 100]"""
    rate = _clamp(Decimal(on_time_rate), Decimal("0"), Decimal("1"))
    return rate * Decimal("200") - Decimal("100")


def utilization_component(ratio: Decimal) -> Decimal:
    """Lower utilization is better: 0 -> +100, >= 0.9 -> -100, linear between"""
    if ratio <= 0:
        return UPPER
    if ratio >= UTILIZATION_CEILING:
        return LOWER
    return UPPER - (ratio / UTILIZATION_CEILING) * Decimal("200")


def tenure_component(account_age_days: int) -> Decimal:
    """<= 7 days -> -50, >= 365 days -> +100, linear interpolation between"""
    if account_age_days <= TENURE_FLOOR_DAYS:
        return TENURE_FLOOR_SCORE
    if account_age_days >= TENURE_CEILING_DAYS:
        return UPPER

    elapsed = Decimal(account_age_days - TENURE_FLOOR_DAYS)
    return min(TENURE_FLOOR_SCORE + (elapsed / TENURE_SLOPE_DAYS) * Decimal("150"), UPPER)


def behavior_component(has_recent_delinquency: bool, recent_on_time_count: int) -> Decimal:
    """Any delinquency in 90 days -> -100, else +10 per on-time loan capped at +100"""
    if has_recent_delinquency:
        return LOWER
    return _clamp(Decimal(recent_on_time_count) * Decimal("10"))


def kyc_component(kyc_approved: bool) -> Decimal:
    return UPPER if kyc_approved else Decimal("0")


def score_breakdown(history: UserHistory) -> Dict[str, ScoreComponent]:
    """
    Normalize each scoring input to [-100, 100] and attach its weight.

    Weights:
    - 35%: Payment history (12-month on-time rate)
    - 30%: Utilization (outstanding principal / credit limit)
    - 10%: Tenure (account age)
    - 15%: Behavior (recent delinquency or on-time streak)
    - 10%: KYC approved
    """
    return {
        "payment_history": ScoreComponent(
            raw_value=history.on_time_payment_rate,
            normalized=payment_history_component(history.on_time_payment_rate),
            weight=settings.score_weight_payment_history,
        ),
        "utilization": ScoreComponent(
            raw_value=history.utilization_ratio,
            normalized=_clamp(utilization_component(history.utilization_ratio)),
            weight=settings.score_weight_utilization,
        ),
        "tenure": ScoreComponent(
            raw_value=history.account_age_days,
            normalized=_clamp(tenure_component(history.account_age_days)),
            weight=settings.score_weight_tenure,
        ),
        "behavior": ScoreComponent(
            raw_value=history.recent_on_time_count,
            normalized=behavior_component(history.has_recent_delinquency, history.recent_on_time_count),
            weight=settings.score_weight_behavior,
        ),
        "kyc": ScoreComponent(
            raw_value=history.kyc_approved,
            normalized=kyc_component(history.kyc_approved),
            weight=settings.score_weight_kyc,
        ),
    }


def clamp_score(score: Decimal) -> int:
    """Truncate to an integer and clamp into [score_min, score_max]"""
    return max(settings.score_min, min(settings.score_max, int(score)))


def compute_score(history: UserHistory) -> int:
    """
    Main entry point: reduce a borrower's history to a bounded integer score.

    Pure function of its input; no clock or randomness is consulted.
    """
    components = score_breakdown(history)
    weighted = Decimal(settings.score_base) + sum(
        (component.contribution for component in components.values()), Decimal("0")
    )
    return clamp_score(weighted)
