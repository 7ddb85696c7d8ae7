"""
Operation set exposed to the UI and admin collaborators.

``CampusDeliveryPlatform`` wires the services around one storage instance and
checks who is acting before delegating. Services own the state rules; this
layer owns authentication and administrator checks.
"""

import logging
from decimal import Decimal
from typing import Optional

from bonuses import BonusEngine

from .accounts import AccountService
from .admin import AdminService
from .config import Config
from .gigs import GigService
from .models import (
    Coupon,
    CouponCreateRequest,
    CouponUpdate,
    CreateGigRequest,
    Gig,
    GigCreateResponse,
    GigStatus,
    GigUpdate,
    LedgerHistoryResponse,
    PlatformConfig,
    ReferralEntry,
    RevenueReport,
    SessionResponse,
    SignupRequest,
    SweepResult,
    Transaction,
    User,
    UserBalance,
    UserSort,
    WalletLoadCreateRequest,
    WalletLoadResponse,
    WithdrawalCreateRequest,
    WithdrawalResponse,
)
from .service import LedgerService, Clock, PermissionDeniedError, utc_now
from .storage import InMemoryStorage
from .sweeper import ExpirySweeper
from .wallet import WalletService

logger = logging.getLogger(__name__)


class CampusDeliveryPlatform:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        clock: Clock = utc_now,
        platform_fee: Decimal = Decimal("0.2"),
        offer_bar_text: str = "",
        currency: str = "INR",
        min_withdrawal: Decimal = Decimal("100"),
        bonus_engine: Optional[BonusEngine] = None,
        sweep_interval_seconds: int = 60,
    ):
        self.storage = storage or InMemoryStorage(platform_fee=platform_fee, offer_bar_text=offer_bar_text)
        self.ledger = LedgerService(self.storage, currency=currency, clock=clock)
        self.accounts = AccountService(self.storage, self.ledger, clock=clock)
        self.admin = AdminService(self.storage)
        self.wallet = WalletService(
            self.storage, self.ledger, self.accounts,
            bonus_engine=bonus_engine, min_withdrawal=min_withdrawal,
        )
        self.gigs = GigService(self.storage, self.ledger, self.accounts, fee_provider=self.admin.current_fee)
        self.sweeper = ExpirySweeper(self.gigs, clock=clock, interval_seconds=sweep_interval_seconds)

    @classmethod
    def from_config(cls) -> "CampusDeliveryPlatform":
        platform = cls(
            platform_fee=Config.PLATFORM_FEE,
            offer_bar_text=Config.OFFER_BAR_TEXT,
            currency=Config.CURRENCY,
            min_withdrawal=Config.MIN_WITHDRAWAL_AMOUNT,
            bonus_engine=BonusEngine(
                referral_min_amount=Config.REFERRAL_MIN_RECHARGE,
                referee_rate=Config.REFERRAL_REFEREE_BONUS_RATE,
                referrer_reward=Config.REFERRAL_REFERRER_REWARD,
            ),
            sweep_interval_seconds=Config.EXPIRY_SWEEP_INTERVAL_SECONDS,
        )
        if Config.SEED_DEMO_DATA:
            from .seed import seed_demo_data
            seed_demo_data(platform.storage)
        return platform

    # ----- Session -----

    def signup(self, request: SignupRequest) -> SessionResponse:
        return self.accounts.signup(request)

    def login(self, email: str, password: str) -> SessionResponse:
        return self.accounts.login(email, password)

    def logout(self, token: str) -> bool:
        return self.accounts.logout(token)

    def current_user(self, actor_id: Optional[str]) -> User:
        return User(**self.accounts.require_actor(actor_id))

    def get_balance(self, actor_id: Optional[str], user_id: str) -> UserBalance:
        self._require_self_or_admin(actor_id, user_id)
        return self.ledger.get_balance(user_id)

    def get_ledger_history(self, actor_id: Optional[str], user_id: str, limit: int = 50,
                           offset: int = 0) -> LedgerHistoryResponse:
        self._require_self_or_admin(actor_id, user_id)
        return self.ledger.get_ledger_history(user_id, limit, offset)

    # ----- Gigs -----

    def list_gigs(self, actor_id: Optional[str], status: Optional[GigStatus] = None, mine: bool = False) -> list[Gig]:
        if mine:
            self.accounts.require_actor(actor_id)
            gigs = self.gigs.list_user_gigs(actor_id)
        else:
            gigs = self.gigs.list_gigs(status)
        return [self.gigs.visible_to(g, actor_id) for g in gigs]

    def get_gig(self, actor_id: Optional[str], gig_id: str) -> Gig:
        return self.gigs.visible_to(self.gigs.get_gig(gig_id), actor_id)

    def add_gig(self, actor_id: Optional[str], request: CreateGigRequest) -> GigCreateResponse:
        return self.gigs.add_gig(actor_id, request)

    def update_gig(self, actor_id: Optional[str], gig_id: str, updates: GigUpdate) -> Gig:
        self.accounts.require_actor(actor_id)
        return self.gigs.visible_to(self.gigs.update_gig(gig_id, updates, actor_id=actor_id), actor_id)

    def accept_gig(self, actor_id: Optional[str], gig_id: str, acceptance_selfie_url: Optional[str] = None) -> Gig:
        gig = self.gigs.accept_gig(gig_id, actor_id, acceptance_selfie_url=acceptance_selfie_url)
        return self.gigs.visible_to(gig, actor_id)

    def complete_gig(self, actor_id: Optional[str], gig_id: str) -> Gig:
        self.accounts.require_actor(actor_id)
        return self.gigs.visible_to(self.gigs.complete_gig(gig_id, actor_id=actor_id), actor_id)

    def submit_feedback(self, actor_id: Optional[str], gig_id: str, rating: int, comments: Optional[str] = None) -> Gig:
        return self.gigs.visible_to(self.gigs.submit_feedback(gig_id, actor_id, rating, comments), actor_id)

    def delete_gig(self, actor_id: Optional[str], gig_id: str) -> None:
        self.accounts.require_actor(actor_id)
        self.gigs.delete_gig(gig_id, actor_id=actor_id)

    # ----- Wallet -----

    def request_wallet_load(self, actor_id: Optional[str], request: WalletLoadCreateRequest) -> WalletLoadResponse:
        return self.wallet.request_wallet_load(actor_id, request)

    def approve_wallet_load(self, actor_id: Optional[str], request_id: str) -> WalletLoadResponse:
        self.accounts.require_admin(actor_id)
        return self.wallet.approve_wallet_load(request_id)

    def reject_wallet_load(self, actor_id: Optional[str], request_id: str) -> WalletLoadResponse:
        self.accounts.require_admin(actor_id)
        return self.wallet.reject_wallet_load(request_id)

    def request_withdrawal(self, actor_id: Optional[str], request: WithdrawalCreateRequest) -> WithdrawalResponse:
        return self.wallet.request_withdrawal(actor_id, request)

    def approve_withdrawal(self, actor_id: Optional[str], request_id: str) -> WithdrawalResponse:
        self.accounts.require_admin(actor_id)
        return self.wallet.approve_withdrawal(request_id)

    def reject_withdrawal(self, actor_id: Optional[str], request_id: str) -> WithdrawalResponse:
        self.accounts.require_admin(actor_id)
        return self.wallet.reject_withdrawal(request_id)

    def manual_top_up(self, actor_id: Optional[str], phone: str, amount) -> Transaction:
        self.accounts.require_admin(actor_id)
        return self.wallet.manual_top_up(phone, amount)

    # ----- Administration -----

    def set_platform_fee(self, actor_id: Optional[str], fee) -> PlatformConfig:
        self.accounts.require_admin(actor_id)
        return self.admin.set_platform_fee(fee)

    def set_offer_bar_text(self, actor_id: Optional[str], text: str) -> PlatformConfig:
        self.accounts.require_admin(actor_id)
        return self.admin.set_offer_bar_text(text)

    def delete_user(self, actor_id: Optional[str], user_id: str) -> None:
        self.accounts.require_admin(actor_id)
        self.admin.delete_user(user_id)

    def add_coupon(self, actor_id: Optional[str], request: CouponCreateRequest) -> Coupon:
        self.accounts.require_admin(actor_id)
        return self.admin.add_coupon(request)

    def update_coupon(self, actor_id: Optional[str], coupon_id: str, updates: CouponUpdate) -> Coupon:
        self.accounts.require_admin(actor_id)
        return self.admin.update_coupon(coupon_id, updates)

    def delete_coupon(self, actor_id: Optional[str], coupon_id: str) -> None:
        self.accounts.require_admin(actor_id)
        self.admin.delete_coupon(coupon_id)

    def list_users(self, actor_id: Optional[str], search: Optional[str] = None, sort_by: UserSort = UserSort.NAME,
                   descending: bool = False) -> list[User]:
        self.accounts.require_admin(actor_id)
        return self.admin.list_users(search, sort_by=sort_by, descending=descending)

    def list_referrals(self, actor_id: Optional[str]) -> list[ReferralEntry]:
        self.accounts.require_admin(actor_id)
        return self.admin.list_referrals()

    def sweep_expired_gigs(self) -> SweepResult:
        return self.sweeper.sweep()

    def revenue_report(self, actor_id: Optional[str]) -> RevenueReport:
        self.accounts.require_admin(actor_id)
        return self.admin.revenue_report()

    def _require_self_or_admin(self, actor_id: Optional[str], user_id: str) -> None:
        actor = self.accounts.require_actor(actor_id)
        if actor["id"] != user_id and not actor.get("is_admin"):
            raise PermissionDeniedError("You can only view your own wallet")
