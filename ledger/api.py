from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Config, configure_logging
from .models import (
    AcceptGigRequest,
    Coupon,
    CouponCreateRequest,
    CouponUpdate,
    CreateGigRequest,
    FeedbackRequest,
    Gig,
    GigCreateResponse,
    GigStatus,
    GigUpdate,
    LedgerHistoryResponse,
    LoginRequest,
    ManualTopUpRequest,
    OfferBarRequest,
    PlatformConfig,
    PlatformFeeRequest,
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
    WalletLoadRequest,
    WalletLoadResponse,
    WalletRequestStatus,
    WithdrawalCreateRequest,
    WithdrawalRequest,
    WithdrawalRequestStatus,
    WithdrawalResponse,
)
from .platform import CampusDeliveryPlatform
from .service import (
    LedgerServiceError,
    BelowMinimumError,
    DuplicateError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidCredentialsError,
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    UnauthenticatedError,
)

configure_logging()

platform = CampusDeliveryPlatform.from_config()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if Config.EXPIRY_SWEEPER_ENABLED:
        platform.sweeper.start()
    yield
    platform.sweeper.shutdown()


app = FastAPI(
    title="Campus Delivery Ledger API",
    description="Wallet ledger and gig lifecycle for a campus parcel-delivery marketplace",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS = {
    InsufficientFundsError: status.HTTP_402_PAYMENT_REQUIRED,
    BelowMinimumError: status.HTTP_400_BAD_REQUEST,
    InvalidAmountError: status.HTTP_400_BAD_REQUEST,
    InvalidStateTransitionError: status.HTTP_409_CONFLICT,
    DuplicateError: status.HTTP_409_CONFLICT,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    UnauthenticatedError: status.HTTP_401_UNAUTHORIZED,
    InvalidCredentialsError: status.HTTP_401_UNAUTHORIZED,
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
}


def http_error(e: LedgerServiceError) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS.get(type(e), status.HTTP_400_BAD_REQUEST), detail=str(e))


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    return token.strip() if scheme.lower() == "bearer" and token.strip() else None


def current_actor(token: Optional[str] = Depends(bearer_token)) -> Optional[str]:
    return platform.accounts.resolve_session(token)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "campus-delivery-ledger"}


@app.get("/config", response_model=PlatformConfig, tags=["System"])
def get_config() -> PlatformConfig:
    return platform.admin.get_platform_config()


# ----- Auth -----

@app.post("/auth/signup", response_model=SessionResponse, status_code=status.HTTP_201_CREATED, tags=["Auth"])
def signup(request: SignupRequest) -> SessionResponse:
    try:
        return platform.signup(request)
    except LedgerServiceError as e:
        raise http_error(e)


@app.post("/auth/login", response_model=SessionResponse, tags=["Auth"])
def login(request: LoginRequest) -> SessionResponse:
    try:
        return platform.login(request.email, request.password)
    except LedgerServiceError as e:
        raise http_error(e)


@app.post("/auth/logout", tags=["Auth"])
def logout(token: Optional[str] = Depends(bearer_token)):
    return {"logged_out": bool(token) and platform.logout(token)}


@app.get("/me", response_model=User, tags=["Users"])
def me(actor_id: Optional[str] = Depends(current_actor)) -> User:
    try:
        return platform.current_user(actor_id)
    except LedgerServiceError as e:
        raise http_error(e)


@app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: str, actor_id: Optional[str] = Depends(current_actor)) -> UserBalance:
    try:
        return platform.get_balance(actor_id, user_id)
    except LedgerServiceError as e:
        raise http_error(e)


@app.get("/users/{user_id}/transactions", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_ledger(user_id: str, limit: int = 50, offset: int = 0,
                    actor_id: Optional[str] = Depends(current_actor)) -> LedgerHistoryResponse:
    try:
        return platform.get_ledger_history(actor_id, user_id, limit, offset)
    except LedgerServiceError as e:
        raise http_error(e)


# ----- Gigs -----

@app.get("/gigs", response_model=list[Gig], tags=["Gigs"])
def list_gigs(gig_status: Optional[GigStatus] = None, mine: bool = False,
              actor_id: Optional[str] = Depends(current_actor)) -> list[Gig]:
    try:
        return platform.list_gigs(actor_id, gig_status, mine=mine)
    except LedgerServiceError as e:
        raise http_error(e)


@app.post("/gigs", response_model=GigCreateResponse, tags=["Gigs"])
def add_gig(request: CreateGigRequest, actor_id: Optional[str] = Depends(current_actor)) -> GigCreateResponse:
    return platform.add_gig(actor_id, request)


@app.get("/gigs/{gig_id}", response_model=Gig, tags=["Gigs"])
def get_gig(gig_id: str, actor_id: Optional[str] = Depends(current_actor)) -> Gig:
    try:
        return platform.get_gig(actor_id, gig_id)
    except LedgerServiceError as e:
        raise http_error(e)


@app.patch("/gigs/{gig_id}", response_model=Gig, tags=["Gigs"])
def update_gig(gig_id: str, updates: GigUpdate, actor_id: Optional[str] = Depends(current_actor)) -> Gig:
    try:
        return platform.update_gig(actor_id, gig_id, updates)
    except LedgerServiceError as e:
        raise http_error(e)


@app.post("/gigs/{gig_id}/accept", response_model=Gig, tags=["Gigs"])
def accept_gig(gig_id: str, request: AcceptGigRequest,
               actor_id: Optional[str] = Depends(current_actor)) -> Gig:
    try:
        return platform.accept_gig(actor_id, gig_id, request.acceptance_selfie_url)
    except LedgerServiceError as e:
        raise http_error(e)


@app.post("/gigs/{gig_id}/complete", response_model=Gig, tags=["Gigs"])
def complete_gig(gig_id: str, actor_id: Optional[str] = Depends(current_actor)) -> Gig:
    try:
        return platform.complete_gig(actor_id, gig_id)
    except LedgerServiceError as e:
        raise http_error(e)


@app.post("/gigs/{gig_id}/feedback", response_model=Gig, tags=["Gigs"])
def submit_feedback(gig_id: str, request: FeedbackRequest,
                    actor_id: Optional[str] = Depends(current_actor)) -> Gig:
    try:
        return platform.submit_feedback(actor_id, gig_id, request.rating, request.comments)
    except LedgerServiceError as e:
        raise http_error(e)


@app.delete("/gigs/{gig_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Gigs"])
def delete_gig(gig_id: str, actor_id: Optional[str] = Depends(current_actor)):
    try:
        platform.delete_gig(actor_id, gig_id)
    except LedgerServiceError as e:
        raise http_error(e)


# ----- Wallet -----

@app.post("/wallet/loads", response_model=WalletLoadResponse, status_code=status.HTTP_201_CREATED, tags=["Wallet"])
def request_wallet_load(request: WalletLoadCreateRequest,
                        actor_id: Optional[str] = Depends(current_actor)) -> WalletLoadResponse:
    try:
        return platform.request_wallet_load(actor_id, request)
    except LedgerServiceError as e:
        raise http_error(e)


@app.get("/wallet/loads", response_model=list[WalletLoadRequest], tags=["Wallet"])
def list_wallet_loads(request_status: Optional[WalletRequestStatus] = None,
                      actor_id: Optional[str] = Depends(current_actor)) -> list[WalletLoadRequest]:
    try:
        platform.accounts.require_admin(actor_id)
    except LedgerServiceError as e:
        raise http_error(e)
    return platform.wallet.list_wallet_loads(request_status)


@app.post("/wallet/loads/{request_id}/approve", response_model=WalletLoadResponse, tags=["Wallet"])
def approve_wallet_load(request_id: str, actor_id: Optional[str] = Depends(current_actor)) -> WalletLoadResponse:
    try:
        return platform.approve_wallet_load(actor_id, request_id)
    except LedgerServiceError as e:
        raise http_error(e)


@app.post("/wallet/loads/{request_id}/reject", response_model=WalletLoadResponse, tags=["Wallet"])
def reject_wallet_load(request_id: str, actor_id: Optional[str] = Depends(current_actor)) -> WalletLoadResponse:
    try:
        return platform.reject_wallet_load(actor_id, request_id)
    except LedgerServiceError as e:
        raise http_error(e)


@app.post("/wallet/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED,
          tags=["Wallet"])
def request_withdrawal(request: WithdrawalCreateRequest,
                       actor_id: Optional[str] = Depends(current_actor)) -> WithdrawalResponse:
    try:
        return platform.request_withdrawal(actor_id, request)
    except LedgerServiceError as e:
        raise http_error(e)


@app.get("/wallet/withdrawals", response_model=list[WithdrawalRequest], tags=["Wallet"])
def list_withdrawals(request_status: Optional[WithdrawalRequestStatus] = None,
                     actor_id: Optional[str] = Depends(current_actor)) -> list[WithdrawalRequest]:
    try:
        platform.accounts.require_admin(actor_id)
    except LedgerServiceError as e:
        raise http_error(e)
    return platform.wallet.list_withdrawals(request_status)


@app.post("/wallet/withdrawals/{request_id}/approve", response_model=WithdrawalResponse, tags=["Wallet"])
def approve_withdrawal(request_id: str, actor_id: Optional[str] = Depends(current_actor)) -> WithdrawalResponse:
    try:
        return platform.approve_withdrawal(actor_id, request_id)
    except LedgerServiceError as e:
        raise http_error(e)


@app.post("/wallet/withdrawals/{request_id}/reject", response_model=WithdrawalResponse, tags=["Wallet"])
def reject_withdrawal(request_id: str, actor_id: Optional[str] = Depends(current_actor)) -> WithdrawalResponse:
    try:
        return platform.reject_withdrawal(actor_id, request_id)
    except LedgerServiceError as e:
        raise http_error(e)


# ----- Admin -----

@app.post("/admin/manual-topup", response_model=Transaction, tags=["Admin"])
def manual_top_up(request: ManualTopUpRequest, actor_id: Optional[str] = Depends(current_actor)) -> Transaction:
    try:
        return platform.manual_top_up(actor_id, request.phone, request.amount)
    except LedgerServiceError as e:
        raise http_error(e)


@app.put("/admin/config/fee", response_model=PlatformConfig, tags=["Admin"])
def set_platform_fee(request: PlatformFeeRequest, actor_id: Optional[str] = Depends(current_actor)) -> PlatformConfig:
    try:
        return platform.set_platform_fee(actor_id, request.fee)
    except LedgerServiceError as e:
        raise http_error(e)


@app.put("/admin/config/offer-bar", response_model=PlatformConfig, tags=["Admin"])
def set_offer_bar_text(request: OfferBarRequest, actor_id: Optional[str] = Depends(current_actor)) -> PlatformConfig:
    try:
        return platform.set_offer_bar_text(actor_id, request.text)
    except LedgerServiceError as e:
        raise http_error(e)


@app.delete("/admin/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Admin"])
def delete_user(user_id: str, actor_id: Optional[str] = Depends(current_actor)):
    try:
        platform.delete_user(actor_id, user_id)
    except LedgerServiceError as e:
        raise http_error(e)


@app.get("/admin/coupons", response_model=list[Coupon], tags=["Admin"])
def list_coupons(actor_id: Optional[str] = Depends(current_actor)) -> list[Coupon]:
    try:
        platform.accounts.require_admin(actor_id)
    except LedgerServiceError as e:
        raise http_error(e)
    return platform.admin.list_coupons()


@app.post("/admin/coupons", response_model=Coupon, status_code=status.HTTP_201_CREATED, tags=["Admin"])
def add_coupon(request: CouponCreateRequest, actor_id: Optional[str] = Depends(current_actor)) -> Coupon:
    try:
        return platform.add_coupon(actor_id, request)
    except LedgerServiceError as e:
        raise http_error(e)


@app.patch("/admin/coupons/{coupon_id}", response_model=Coupon, tags=["Admin"])
def update_coupon(coupon_id: str, updates: CouponUpdate, actor_id: Optional[str] = Depends(current_actor)) -> Coupon:
    try:
        return platform.update_coupon(actor_id, coupon_id, updates)
    except LedgerServiceError as e:
        raise http_error(e)


@app.delete("/admin/coupons/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Admin"])
def delete_coupon(coupon_id: str, actor_id: Optional[str] = Depends(current_actor)):
    try:
        platform.delete_coupon(actor_id, coupon_id)
    except LedgerServiceError as e:
        raise http_error(e)


@app.get("/admin/users", response_model=list[User], tags=["Admin"])
def list_users(search: Optional[str] = None, sort_by: UserSort = UserSort.NAME, descending: bool = False,
               actor_id: Optional[str] = Depends(current_actor)) -> list[User]:
    try:
        return platform.list_users(actor_id, search, sort_by=sort_by, descending=descending)
    except LedgerServiceError as e:
        raise http_error(e)


@app.get("/admin/referrals", response_model=list[ReferralEntry], tags=["Admin"])
def list_referrals(actor_id: Optional[str] = Depends(current_actor)) -> list[ReferralEntry]:
    try:
        return platform.list_referrals(actor_id)
    except LedgerServiceError as e:
        raise http_error(e)


@app.post("/admin/sweep", response_model=SweepResult, tags=["Admin"])
def run_expiry_sweep(actor_id: Optional[str] = Depends(current_actor)) -> SweepResult:
    try:
        platform.accounts.require_admin(actor_id)
    except LedgerServiceError as e:
        raise http_error(e)
    return platform.sweep_expired_gigs()


@app.get("/admin/revenue", response_model=RevenueReport, tags=["Admin"])
def revenue_report(actor_id: Optional[str] = Depends(current_actor)) -> RevenueReport:
    try:
        return platform.revenue_report(actor_id)
    except LedgerServiceError as e:
        raise http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.PORT)
