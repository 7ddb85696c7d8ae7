from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def normalize_code(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


def _format_percentage(rate: Decimal) -> str:
    pct = (Decimal(str(rate)) * 100).normalize()
    return f"{pct:f}"


@dataclass
class TopUpContext:
    """Everything the rules need to know about a single top-up."""
    amount: Decimal
    user_id: str
    user_name: str
    coupon_code: Optional[str] = None
    used_coupon_codes: dict = field(default_factory=dict)
    first_recharge_completed: bool = False
    referred_by_code: Optional[str] = None


@dataclass
class ReferrerCredit:
    referrer_id: str
    amount: Decimal
    description: str


@dataclass
class BonusAward:
    amount: Decimal
    label: str
    used_coupon_codes: Optional[dict] = None
    completes_first_recharge: bool = False
    referrer_credit: Optional[ReferrerCredit] = None


@dataclass
class BonusOutcome:
    total_bonus: Decimal
    labels: list[str]
    used_coupon_codes: dict
    first_recharge_completed: bool
    referrer_credit: Optional[ReferrerCredit] = None

    @property
    def description(self) -> str:
        return " & ".join(self.labels)


@dataclass
class CouponBonusRule:
    """Percentage bonus from an active coupon, limited per user and code."""
    coupons: list[dict]

    def evaluate(self, context: TopUpContext) -> Optional[BonusAward]:
        code = normalize_code(context.coupon_code)
        if not code:
            return None
        coupon = next(
            (c for c in self.coupons if normalize_code(c["code"]) == code and c.get("is_active")),
            None,
        )
        if coupon is None:
            return None
        times_used = context.used_coupon_codes.get(code, 0)
        if times_used >= coupon["max_uses_per_user"]:
            return None
        rate = Decimal(str(coupon["bonus_percentage"]))
        return BonusAward(
            amount=to_money(context.amount * rate),
            label=f"{_format_percentage(rate)}% bonus from {code}",
            used_coupon_codes={**context.used_coupon_codes, code: times_used + 1},
        )


@dataclass
class FirstRechargeReferralRule:
    """One-time bonus for a referred user's first qualifying top-up, plus a fixed referrer reward."""
    users: list[dict]
    min_amount: Decimal = Decimal("100")
    referee_rate: Decimal = Decimal("0.05")
    referrer_reward: Decimal = Decimal("10")

    def evaluate(self, context: TopUpContext) -> Optional[BonusAward]:
        if context.amount < self.min_amount:
            return None
        if context.first_recharge_completed or not context.referred_by_code:
            return None
        referrer = next(
            (u for u in self.users
             if u["referral_code"] == context.referred_by_code and u["id"] != context.user_id),
            None,
        )
        if referrer is None:
            return None
        return BonusAward(
            amount=to_money(context.amount * self.referee_rate),
            label=f"{_format_percentage(self.referee_rate)}% First Recharge Referral Bonus",
            completes_first_recharge=True,
            referrer_credit=ReferrerCredit(
                referrer_id=referrer["id"],
                amount=to_money(self.referrer_reward),
                description=f"Referral reward for {context.user_name}",
            ),
        )


class BonusEngine:
    def __init__(
        self,
        referral_min_amount: Decimal = Decimal("100"),
        referee_rate: Decimal = Decimal("0.05"),
        referrer_reward: Decimal = Decimal("10"),
    ):
        self.referral_min_amount = Decimal(str(referral_min_amount))
        self.referee_rate = Decimal(str(referee_rate))
        self.referrer_reward = Decimal(str(referrer_reward))

    def evaluate(self, context: TopUpContext, coupons: list[dict], users: list[dict]) -> BonusOutcome:
        """Apply the coupon rule, then the referral rule, accumulating into one outcome."""
        rules = [
            CouponBonusRule(coupons=coupons),
            FirstRechargeReferralRule(
                users=users,
                min_amount=self.referral_min_amount,
                referee_rate=self.referee_rate,
                referrer_reward=self.referrer_reward,
            ),
        ]
        outcome = BonusOutcome(
            total_bonus=Decimal("0.00"),
            labels=[],
            used_coupon_codes=dict(context.used_coupon_codes),
            first_recharge_completed=context.first_recharge_completed,
        )
        for rule in rules:
            award = rule.evaluate(context)
            if award is None:
                continue
            outcome.total_bonus = to_money(outcome.total_bonus + award.amount)
            outcome.labels.append(award.label)
            if award.used_coupon_codes is not None:
                outcome.used_coupon_codes = award.used_coupon_codes
            if award.completes_first_recharge:
                outcome.first_recharge_completed = True
            if award.referrer_credit is not None:
                outcome.referrer_credit = award.referrer_credit
        return outcome
