import logging
from decimal import Decimal
from typing import Optional

from bonuses import normalize_code

from .models import (
    Coupon,
    CouponCreateRequest,
    CouponUpdate,
    GigStatus,
    PlatformConfig,
    ReferralEntry,
    ReferralStatus,
    RevenueReport,
    User,
    UserSort,
    WalletRequestStatus,
    to_money,
)
from .service import DuplicateError, InvalidAmountError, NotFoundError
from .storage import (
    InMemoryStorage,
    USERS,
    CREDENTIALS,
    SESSIONS,
    GIGS,
    COUPONS,
    WALLET_REQUESTS,
    PLATFORM_CONFIG,
    PLATFORM_CONFIG_ID,
)

logger = logging.getLogger(__name__)


class AdminService:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    # ----- Platform config -----

    def get_platform_config(self) -> PlatformConfig:
        return PlatformConfig(**self.storage.get(PLATFORM_CONFIG, PLATFORM_CONFIG_ID))

    def current_fee(self) -> Decimal:
        return Decimal(str(self.storage.get(PLATFORM_CONFIG, PLATFORM_CONFIG_ID)["fee"]))

    def set_platform_fee(self, fee) -> PlatformConfig:
        fee = Decimal(str(fee))
        if not Decimal("0") <= fee <= Decimal("1"):
            raise InvalidAmountError("Platform fee must be between 0 and 1")
        self.storage.update(PLATFORM_CONFIG, PLATFORM_CONFIG_ID, {"fee": fee})
        logger.info(f"Platform fee set to {fee}")
        return self.get_platform_config()

    def set_offer_bar_text(self, text: str) -> PlatformConfig:
        self.storage.update(PLATFORM_CONFIG, PLATFORM_CONFIG_ID, {"offer_bar_text": text})
        return self.get_platform_config()

    # ----- Coupons -----

    def list_coupons(self) -> list[Coupon]:
        return [Coupon(**c) for c in self.storage.find(COUPONS)]

    def add_coupon(self, request: CouponCreateRequest) -> Coupon:
        code = normalize_code(request.code)
        with self.storage.transaction():
            if self.storage.find_one(COUPONS, lambda c: c["code"] == code):
                raise DuplicateError(f"Coupon {code} already exists")
            coupon = Coupon(id=self.storage.new_id(), **{**request.model_dump(), "code": code})
            self.storage.put(COUPONS, coupon.model_dump())
        logger.info(f"Coupon {code} added")
        return coupon

    def update_coupon(self, coupon_id: str, updates: CouponUpdate) -> Coupon:
        changes = updates.model_dump(exclude_unset=True)
        if "code" in changes:
            changes["code"] = normalize_code(changes["code"])
        with self.storage.transaction():
            if not self.storage.get(COUPONS, coupon_id):
                raise NotFoundError(f"Coupon {coupon_id} not found")
            if "code" in changes and self.storage.find_one(
                COUPONS, lambda c: c["code"] == changes["code"] and c["id"] != coupon_id
            ):
                raise DuplicateError(f"Coupon {changes['code']} already exists")
            coupon = self.storage.update(COUPONS, coupon_id, changes)
        return Coupon(**coupon)

    def delete_coupon(self, coupon_id: str) -> None:
        if not self.storage.delete(COUPONS, coupon_id):
            raise NotFoundError(f"Coupon {coupon_id} not found")
        logger.info(f"Coupon {coupon_id} deleted")

    # ----- Users -----

    def delete_user(self, user_id: str) -> None:
        """Remove a user account.

        Open gigs, pending requests and any remaining wallet balance are left
        untouched; reconciling them is an administrator task.
        """
        with self.storage.transaction():
            user = self.storage.get(USERS, user_id)
            if not user:
                raise NotFoundError(f"User {user_id} not found")
            self.storage.delete(USERS, user_id)
            self.storage.delete(CREDENTIALS, user_id)
            for session in self.storage.find(SESSIONS, lambda s: s["user_id"] == user_id):
                self.storage.delete(SESSIONS, session["id"])
        logger.warning(f"User {user_id} deleted with outstanding balance {user['wallet_balance']}")

    def list_users(self, search: Optional[str] = None, sort_by: UserSort = UserSort.NAME,
                   descending: bool = False) -> list[User]:
        """Non-admin users whose name (case-insensitive) or phone contains ``search``."""
        term = (search or "").strip()
        users = [
            User(**u) for u in self.storage.find(USERS, lambda u: not u.get("is_admin"))
            if not term or term.lower() in u["name"].lower() or term in u["phone"]
        ]
        if sort_by == UserSort.WALLET_BALANCE:
            users.sort(key=lambda u: u.wallet_balance, reverse=descending)
        else:
            users.sort(key=lambda u: u.name.lower(), reverse=descending)
        return users

    def list_referrals(self) -> list[ReferralEntry]:
        users = self.storage.find(USERS)
        by_code = {u["referral_code"]: u for u in users}
        entries = []
        for referee in users:
            code = referee.get("referred_by_code")
            if not code:
                continue
            referrer = by_code.get(code)
            entries.append(ReferralEntry(
                referee_id=referee["id"],
                referee_name=referee["name"],
                referred_by_code=code,
                referrer_id=referrer["id"] if referrer else None,
                referrer_name=referrer["name"] if referrer else None,
                status=ReferralStatus.REWARDED if referee.get("first_recharge_completed") else ReferralStatus.PENDING,
            ))
        entries.sort(key=lambda e: e.referee_name.lower())
        return entries

    # ----- Reporting -----

    def revenue_report(self) -> RevenueReport:
        gigs = self.storage.find(GIGS)
        completed = [g for g in gigs if g["status"] == GigStatus.COMPLETED]
        gross = sum((to_money(g["price"]) for g in completed), Decimal("0.00"))
        revenue = sum((to_money(g.get("platform_fee_amount") or 0) for g in completed), Decimal("0.00"))
        return RevenueReport(
            completed_gigs=len(completed),
            gross_volume=gross,
            platform_revenue=revenue,
            payouts=gross - revenue,
            total_users=len(self.storage.find(USERS, lambda u: not u.get("is_admin"))),
            total_gigs=len(gigs),
            gigs_in_progress=sum(1 for g in gigs if g["status"] == GigStatus.ACCEPTED),
            pending_wallet_loads=len(self.storage.find(
                WALLET_REQUESTS, lambda r: r["status"] == WalletRequestStatus.PENDING,
            )),
        )
