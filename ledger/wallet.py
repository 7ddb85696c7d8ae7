"""
Wallet request workflow.

Top-up requests record intent only and move money when an administrator
approves them. Withdrawal requests take the money out of the wallet at
request time and give it back if an administrator rejects them. Both kinds
leave PENDING exactly once; acting on a resolved request is a no-op.
"""

import logging
from decimal import Decimal
from typing import Optional

from bonuses import BonusEngine, TopUpContext, normalize_code

from .accounts import AccountService
from .models import (
    TransactionType,
    WalletLoadRequest,
    WalletRequestStatus,
    WithdrawalRequest,
    WithdrawalRequestStatus,
    WalletLoadCreateRequest,
    WithdrawalCreateRequest,
    WalletLoadResponse,
    WithdrawalResponse,
    Transaction,
    to_money,
)
from .service import (
    LedgerService,
    BelowMinimumError,
    InsufficientFundsError,
    NotFoundError,
    positive_money,
)
from .storage import InMemoryStorage, USERS, COUPONS, WALLET_REQUESTS, WITHDRAWAL_REQUESTS

logger = logging.getLogger(__name__)


class WalletService:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerService,
        accounts: AccountService,
        bonus_engine: Optional[BonusEngine] = None,
        min_withdrawal: Decimal = Decimal("100"),
    ):
        self.storage = storage
        self.ledger = ledger
        self.accounts = accounts
        self.bonus_engine = bonus_engine or BonusEngine()
        self.min_withdrawal = to_money(min_withdrawal)

    # ----- Top-ups -----

    def request_wallet_load(self, actor_id: Optional[str], request: WalletLoadCreateRequest) -> WalletLoadResponse:
        user = self.accounts.require_actor(actor_id)
        amount = positive_money(request.amount)
        request_data = {
            "id": self.storage.new_id(),
            "user_id": user["id"],
            "user_name": user["name"],
            "amount": amount,
            "utr": request.utr.strip(),
            "screenshot_url": request.screenshot_url,
            "status": WalletRequestStatus.PENDING,
            "requested_at": self.ledger.clock(),
            "coupon_code": normalize_code(request.coupon_code),
            "resolved_at": None,
        }
        self.storage.put(WALLET_REQUESTS, request_data)
        logger.info(f"Wallet load {request_data['id']} requested by {user['id']} for {request_data['amount']}")
        return WalletLoadResponse(
            request=WalletLoadRequest(**request_data),
            message="Wallet load request submitted for review",
        )

    def approve_wallet_load(self, request_id: str) -> WalletLoadResponse:
        with self.storage.transaction():
            request_data = self._require(WALLET_REQUESTS, request_id, "Wallet load request")
            if request_data["status"] != WalletRequestStatus.PENDING:
                logger.info(f"Wallet load {request_id} already {request_data['status'].value}; approve ignored")
                return WalletLoadResponse(
                    request=WalletLoadRequest(**request_data),
                    message=f"Request already {request_data['status'].value.lower()}",
                )

            user = self.ledger.require_user(request_data["user_id"])
            amount = to_money(request_data["amount"])
            context = TopUpContext(
                amount=amount,
                user_id=user["id"],
                user_name=user["name"],
                coupon_code=request_data.get("coupon_code"),
                used_coupon_codes=user.get("used_coupon_codes") or {},
                first_recharge_completed=user.get("first_recharge_completed", False),
                referred_by_code=user.get("referred_by_code"),
            )
            outcome = self.bonus_engine.evaluate(
                context,
                coupons=self.storage.find(COUPONS),
                users=self.storage.find(USERS),
            )

            transactions: list[Transaction] = []
            if outcome.total_bonus > 0:
                transactions.append(self.ledger.credit(user["id"], outcome.total_bonus, outcome.description))
            else:
                logger.debug(f"No bonus for wallet load {request_id}")
            transactions.append(self.ledger.credit(
                user["id"], amount, f"Wallet load approved (UTR: {request_data['utr']})",
                entry_type=TransactionType.TOPUP,
            ))
            self.storage.update(USERS, user["id"], {
                "used_coupon_codes": outcome.used_coupon_codes,
                "first_recharge_completed": outcome.first_recharge_completed,
            })

            if outcome.referrer_credit:
                referral = outcome.referrer_credit
                transactions.append(self.ledger.credit(referral.referrer_id, referral.amount, referral.description))

            request_data = self.storage.update(WALLET_REQUESTS, request_id, {
                "status": WalletRequestStatus.APPROVED,
                "resolved_at": self.ledger.clock(),
            })

        logger.info(f"Wallet load {request_id} approved: {amount} + bonus {outcome.total_bonus}")
        return WalletLoadResponse(
            request=WalletLoadRequest(**request_data),
            transactions=transactions,
            message="Wallet load approved",
        )

    def reject_wallet_load(self, request_id: str) -> WalletLoadResponse:
        with self.storage.transaction():
            request_data = self._require(WALLET_REQUESTS, request_id, "Wallet load request")
            if request_data["status"] != WalletRequestStatus.PENDING:
                logger.info(f"Wallet load {request_id} already {request_data['status'].value}; reject ignored")
                return WalletLoadResponse(
                    request=WalletLoadRequest(**request_data),
                    message=f"Request already {request_data['status'].value.lower()}",
                )
            request_data = self.storage.update(WALLET_REQUESTS, request_id, {
                "status": WalletRequestStatus.REJECTED,
                "resolved_at": self.ledger.clock(),
            })
        logger.info(f"Wallet load {request_id} rejected")
        return WalletLoadResponse(request=WalletLoadRequest(**request_data), message="Wallet load rejected")

    def manual_top_up(self, phone: str, amount) -> Transaction:
        amount = positive_money(amount)
        with self.storage.transaction():
            user = self.accounts.find_by_phone(phone)
            return self.ledger.credit(
                user["id"], amount, "Manual top-up by admin", entry_type=TransactionType.TOPUP,
            )

    # ----- Withdrawals -----

    def request_withdrawal(self, actor_id: Optional[str], request: WithdrawalCreateRequest) -> WithdrawalResponse:
        with self.storage.transaction():
            user = self.accounts.require_actor(actor_id)
            amount = positive_money(request.amount)
            if amount < self.min_withdrawal:
                raise BelowMinimumError(f"Minimum withdrawal amount is {self.min_withdrawal}")
            if amount > to_money(user["wallet_balance"]):
                raise InsufficientFundsError(
                    f"Insufficient wallet balance: {user['wallet_balance']} available, {amount} requested"
                )
            request_data = {
                "id": self.storage.new_id(),
                "user_id": user["id"],
                "user_name": user["name"],
                "amount": amount,
                "upi_id": request.upi_id.strip(),
                "status": WithdrawalRequestStatus.PENDING,
                "requested_at": self.ledger.clock(),
                "resolved_at": None,
            }
            entry = self.ledger.debit(
                user["id"], amount, f"Withdrawal to UPI: {request_data['upi_id']}",
                entry_type=TransactionType.WITHDRAWAL,
            )
            self.storage.put(WITHDRAWAL_REQUESTS, request_data)

        logger.info(f"Withdrawal {request_data['id']} of {amount} requested by {user['id']}")
        return WithdrawalResponse(
            request=WithdrawalRequest(**request_data),
            transaction=entry,
            message="Withdrawal request submitted",
        )

    def approve_withdrawal(self, request_id: str) -> WithdrawalResponse:
        with self.storage.transaction():
            request_data = self._require(WITHDRAWAL_REQUESTS, request_id, "Withdrawal request")
            if request_data["status"] != WithdrawalRequestStatus.PENDING:
                logger.info(f"Withdrawal {request_id} already {request_data['status'].value}; approve ignored")
                return WithdrawalResponse(
                    request=WithdrawalRequest(**request_data),
                    message=f"Request already {request_data['status'].value.lower()}",
                )
            request_data = self.storage.update(WITHDRAWAL_REQUESTS, request_id, {
                "status": WithdrawalRequestStatus.PROCESSED,
                "resolved_at": self.ledger.clock(),
            })
        logger.info(f"Withdrawal {request_id} marked processed")
        return WithdrawalResponse(request=WithdrawalRequest(**request_data), message="Withdrawal processed")

    def reject_withdrawal(self, request_id: str) -> WithdrawalResponse:
        with self.storage.transaction():
            request_data = self._require(WITHDRAWAL_REQUESTS, request_id, "Withdrawal request")
            if request_data["status"] != WithdrawalRequestStatus.PENDING:
                logger.info(f"Withdrawal {request_id} already {request_data['status'].value}; reject ignored")
                return WithdrawalResponse(
                    request=WithdrawalRequest(**request_data),
                    message=f"Request already {request_data['status'].value.lower()}",
                )
            entry = self.ledger.credit(
                request_data["user_id"], request_data["amount"], "Refund for rejected withdrawal request.",
            )
            request_data = self.storage.update(WITHDRAWAL_REQUESTS, request_id, {
                "status": WithdrawalRequestStatus.REJECTED,
                "resolved_at": self.ledger.clock(),
            })
        logger.info(f"Withdrawal {request_id} rejected and refunded")
        return WithdrawalResponse(
            request=WithdrawalRequest(**request_data),
            transaction=entry,
            message="Withdrawal rejected and refunded",
        )

    # ----- Queries -----

    def list_wallet_loads(self, status: Optional[WalletRequestStatus] = None) -> list[WalletLoadRequest]:
        requests = [
            WalletLoadRequest(**r) for r in self.storage.find(WALLET_REQUESTS)
            if status is None or r["status"] == status
        ]
        requests.sort(key=lambda r: r.requested_at, reverse=True)
        return requests

    def list_withdrawals(self, status: Optional[WithdrawalRequestStatus] = None) -> list[WithdrawalRequest]:
        requests = [
            WithdrawalRequest(**r) for r in self.storage.find(WITHDRAWAL_REQUESTS)
            if status is None or r["status"] == status
        ]
        requests.sort(key=lambda r: r.requested_at, reverse=True)
        return requests

    def _require(self, collection: str, doc_id: str, label: str) -> dict:
        doc = self.storage.get(collection, doc_id)
        if not doc:
            raise NotFoundError(f"{label} {doc_id} not found")
        return doc
