from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Round any numeric value to 2 decimal places (half-up)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class TransactionType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    TOPUP = "TOPUP"
    PAYOUT = "PAYOUT"
    WITHDRAWAL = "WITHDRAWAL"


# Sign applied to the amount when reconstructing a balance from the ledger
TRANSACTION_SIGN = {
    TransactionType.CREDIT: 1,
    TransactionType.TOPUP: 1,
    TransactionType.PAYOUT: 1,
    TransactionType.DEBIT: -1,
    TransactionType.WITHDRAWAL: -1,
}


class GigStatus(str, Enum):
    OPEN = "OPEN"
    ACCEPTED = "ACCEPTED"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


class GigSize(str, Enum):
    SMALL = "Small"
    MEDIUM = "Medium"
    LARGE = "Large"


class WalletRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class WithdrawalRequestStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    REJECTED = "REJECTED"


class UserSort(str, Enum):
    NAME = "name"
    WALLET_BALANCE = "wallet_balance"


class ReferralStatus(str, Enum):
    REWARDED = "Rewarded"
    PENDING = "Pending"


class User(BaseModel):
    id: str
    name: str
    phone: str
    email: str
    block: str = ""
    profile_photo_url: str = ""
    college_id_url: str = ""
    rating: Decimal = Decimal("5.0")
    deliveries_completed: int = 0
    wallet_balance: Decimal = Decimal("0.00")
    is_admin: bool = False
    referral_code: str
    referred_by_code: Optional[str] = None
    first_recharge_completed: bool = False
    used_coupon_codes: dict[str, int] = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GigUser(BaseModel):
    """Snapshot of a user taken when they are attached to a gig."""
    id: str
    name: str
    phone: str
    email: str

    @classmethod
    def from_user(cls, user: dict) -> "GigUser":
        return cls(id=user["id"], name=user["name"], phone=user["phone"], email=user["email"])


class Gig(BaseModel):
    id: str
    requester: GigUser
    deliverer: Optional[GigUser] = None
    parcel_info: str
    pickup_block: str
    destination_block: str
    price: Decimal
    delivery_deadline: datetime
    posted_at: datetime
    status: GigStatus
    otp: Optional[str] = None
    acceptance_selfie_url: Optional[str] = None
    note: Optional[str] = None
    size: Optional[GigSize] = None
    is_urgent: bool = False
    completed_at: Optional[datetime] = None
    platform_fee_rate: Optional[Decimal] = None
    platform_fee_amount: Optional[Decimal] = None
    requester_rating: Optional[int] = None
    requester_comments: Optional[str] = None
    deliverer_rating: Optional[int] = None
    deliverer_comments: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: str
    user_id: str
    type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: str
    timestamp: datetime
    related_gig_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount * TRANSACTION_SIGN[self.type]


class WalletLoadRequest(BaseModel):
    id: str
    user_id: str
    user_name: str
    amount: Decimal
    utr: str
    screenshot_url: str
    status: WalletRequestStatus
    requested_at: datetime
    coupon_code: Optional[str] = None
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WithdrawalRequest(BaseModel):
    id: str
    user_id: str
    user_name: str
    amount: Decimal
    upi_id: str
    status: WithdrawalRequestStatus
    requested_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Coupon(BaseModel):
    id: str
    code: str
    bonus_percentage: Decimal = Field(..., ge=0, le=1, description="Fraction, e.g. 0.1 for 10%")
    is_active: bool = True
    max_uses_per_user: int = Field(1, ge=0)

    model_config = ConfigDict(from_attributes=True)


class PlatformConfig(BaseModel):
    fee: Decimal = Field(..., ge=0, le=1)
    offer_bar_text: str = ""


# ----- Request bodies -----

class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    block: str = ""
    profile_photo_url: str = ""
    college_id_url: str = ""
    referred_by_code: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Asha Verma",
            "phone": "9876543210",
            "email": "asha@campus.edu",
            "password": "hunter22",
            "block": "Block B",
            "referred_by_code": "RAVIX7K2",
        }
    })


class LoginRequest(BaseModel):
    email: str
    password: str


class CreateGigRequest(BaseModel):
    parcel_info: str = Field(..., min_length=1)
    pickup_block: str
    destination_block: str
    price: Decimal = Field(..., gt=0)
    delivery_deadline: datetime
    note: Optional[str] = None
    size: Optional[GigSize] = None
    is_urgent: bool = False

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "parcel_info": "Amazon parcel at main gate",
            "pickup_block": "Main Gate",
            "destination_block": "Block A, Room 204",
            "price": 75.00,
            "delivery_deadline": "2026-01-15T18:00:00Z",
            "size": "Small",
        }
    })


class GigUpdate(BaseModel):
    """Partial gig update. Each populated field is routed to the transition it belongs to."""
    status: Optional[GigStatus] = None
    acceptance_selfie_url: Optional[str] = None
    parcel_info: Optional[str] = None
    pickup_block: Optional[str] = None
    destination_block: Optional[str] = None
    note: Optional[str] = None
    size: Optional[GigSize] = None
    is_urgent: Optional[bool] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    comments: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class AcceptGigRequest(BaseModel):
    acceptance_selfie_url: Optional[str] = None


class FeedbackRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comments: Optional[str] = None


class WalletLoadCreateRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    utr: str = Field(..., min_length=1)
    screenshot_url: str = ""
    coupon_code: Optional[str] = None


class WithdrawalCreateRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    upi_id: str = Field(..., min_length=1)


class ManualTopUpRequest(BaseModel):
    phone: str
    amount: Decimal = Field(..., gt=0)


class PlatformFeeRequest(BaseModel):
    fee: Decimal = Field(..., ge=0, le=1)


class OfferBarRequest(BaseModel):
    text: str


class CouponCreateRequest(BaseModel):
    code: str = Field(..., min_length=1)
    bonus_percentage: Decimal = Field(..., ge=0, le=1)
    is_active: bool = True
    max_uses_per_user: int = Field(1, ge=0)


class CouponUpdate(BaseModel):
    code: Optional[str] = None
    bonus_percentage: Optional[Decimal] = Field(None, ge=0, le=1)
    is_active: Optional[bool] = None
    max_uses_per_user: Optional[int] = Field(None, ge=0)


# ----- Responses -----

class SessionResponse(BaseModel):
    token: str
    user: User


class GigCreateResponse(BaseModel):
    success: bool
    gig: Optional[Gig] = None
    transaction: Optional[Transaction] = None
    auth_required: bool = False
    message: str


class WalletLoadResponse(BaseModel):
    request: WalletLoadRequest
    transactions: list[Transaction] = Field(default_factory=list)
    message: str


class WithdrawalResponse(BaseModel):
    request: WithdrawalRequest
    transaction: Optional[Transaction] = None
    message: str


class UserBalance(BaseModel):
    user_id: str
    currency: str
    current_balance: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[Transaction]
    total_count: int
    current_balance: Decimal


class SweepResult(BaseModel):
    swept_at: datetime
    expired_gig_ids: list[str]
    refunded_total: Decimal


class RevenueReport(BaseModel):
    completed_gigs: int
    gross_volume: Decimal
    platform_revenue: Decimal
    payouts: Decimal
    total_users: int = 0
    total_gigs: int = 0
    gigs_in_progress: int = 0
    pending_wallet_loads: int = 0


class ReferralEntry(BaseModel):
    referee_id: str
    referee_name: str
    referred_by_code: str
    referrer_id: Optional[str] = None
    referrer_name: Optional[str] = None
    status: ReferralStatus
