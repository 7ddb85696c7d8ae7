"""
Top-up Bonus Engine

Computes the bonus attached to an approved wallet top-up from the coupon the
user entered and their first-recharge referral state.
"""

from .engine import (
    BonusEngine,
    BonusOutcome,
    BonusAward,
    ReferrerCredit,
    TopUpContext,
    CouponBonusRule,
    FirstRechargeReferralRule,
    normalize_code,
)

__all__ = [
    "BonusEngine",
    "BonusOutcome",
    "BonusAward",
    "ReferrerCredit",
    "TopUpContext",
    "CouponBonusRule",
    "FirstRechargeReferralRule",
    "normalize_code",
]
