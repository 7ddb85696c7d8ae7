import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from .models import (
    TransactionType,
    Transaction,
    UserBalance,
    LedgerHistoryResponse,
    to_money,
)
from .storage import InMemoryStorage, USERS, TRANSACTIONS

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerServiceError(Exception):
    pass


class InsufficientFundsError(LedgerServiceError):
    pass


class BelowMinimumError(LedgerServiceError):
    pass


class InvalidAmountError(LedgerServiceError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class UnauthenticatedError(LedgerServiceError):
    pass


class PermissionDeniedError(LedgerServiceError):
    pass


class InvalidCredentialsError(LedgerServiceError):
    pass


class DuplicateError(LedgerServiceError):
    pass


def positive_money(amount) -> Decimal:
    """Round to cents and reject anything that does not stay above zero."""
    amount = to_money(amount)
    if amount <= 0:
        raise InvalidAmountError(f"Amount must be positive, got {amount}")
    return amount


CREDIT_TYPES = (TransactionType.CREDIT, TransactionType.TOPUP, TransactionType.PAYOUT)
DEBIT_TYPES = (TransactionType.DEBIT, TransactionType.WITHDRAWAL)


class LedgerService:
    """Wallet balance mutations, each paired with exactly one transaction record."""

    def __init__(self, storage: Optional[InMemoryStorage] = None, currency: str = "INR", clock: Clock = utc_now):
        self.storage = storage or InMemoryStorage()
        self.currency = currency
        self.clock = clock

    def credit(
        self,
        user_id: str,
        amount,
        description: str,
        entry_type: TransactionType = TransactionType.CREDIT,
        related_gig_id: Optional[str] = None,
    ) -> Transaction:
        if entry_type not in CREDIT_TYPES:
            raise ValueError(f"{entry_type} is not a credit type")
        amount = positive_money(amount)
        with self.storage.transaction():
            user = self.require_user(user_id)
            new_balance = to_money(user["wallet_balance"]) + amount
            self.storage.update(USERS, user_id, {"wallet_balance": new_balance})
            entry = self._append(user_id, entry_type, amount, new_balance, description, related_gig_id)
        logger.info(f"{entry_type.value} {amount} to {user_id} ({description}); balance {new_balance}")
        return entry

    def debit(
        self,
        user_id: str,
        amount,
        description: str,
        entry_type: TransactionType = TransactionType.DEBIT,
        related_gig_id: Optional[str] = None,
    ) -> Transaction:
        if entry_type not in DEBIT_TYPES:
            raise ValueError(f"{entry_type} is not a debit type")
        amount = positive_money(amount)
        with self.storage.transaction():
            user = self.require_user(user_id)
            current_balance = to_money(user["wallet_balance"])
            if amount > current_balance:
                raise InsufficientFundsError(
                    f"Insufficient wallet balance: {current_balance} available, {amount} required"
                )
            new_balance = current_balance - amount
            self.storage.update(USERS, user_id, {"wallet_balance": new_balance})
            entry = self._append(user_id, entry_type, amount, new_balance, description, related_gig_id)
        logger.info(f"{entry_type.value} {amount} from {user_id} ({description}); balance {new_balance}")
        return entry

    def require_user(self, user_id: str) -> dict:
        user = self.storage.get(USERS, user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def get_balance(self, user_id: str) -> UserBalance:
        user = self.require_user(user_id)
        entries = self.storage.find(TRANSACTIONS, lambda t: t["user_id"] == user_id)
        last_entry = max(entries, key=lambda e: e["timestamp"]) if entries else None
        return UserBalance(
            user_id=user_id,
            currency=self.currency,
            current_balance=to_money(user["wallet_balance"]),
            total_entries=len(entries),
            last_transaction_at=last_entry["timestamp"] if last_entry else None,
        )

    def ledger_balance(self, user_id: str) -> Decimal:
        """Balance reconstructed from the transaction log alone."""
        entries = self.storage.find(TRANSACTIONS, lambda t: t["user_id"] == user_id)
        total = sum((Transaction(**e).signed_amount for e in entries), Decimal("0"))
        return to_money(total)

    def get_ledger_history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        all_entries = [
            Transaction(**e) for e in self.storage.find(TRANSACTIONS, lambda t: t["user_id"] == user_id)
        ]
        all_entries.sort(key=lambda e: e.timestamp, reverse=True)
        paginated = all_entries[offset:offset + limit]
        balance = self.get_balance(user_id)

        return LedgerHistoryResponse(
            user_id=user_id,
            entries=paginated,
            total_count=len(all_entries),
            current_balance=balance.current_balance,
        )

    def _append(
        self,
        user_id: str,
        entry_type: TransactionType,
        amount: Decimal,
        balance_after: Decimal,
        description: str,
        related_gig_id: Optional[str],
    ) -> Transaction:
        entry_data = {
            "id": self.storage.new_id(),
            "user_id": user_id,
            "type": entry_type,
            "amount": amount,
            "balance_after": balance_after,
            "description": description,
            "timestamp": self.clock(),
            "related_gig_id": related_gig_id,
        }
        self.storage.put(TRANSACTIONS, entry_data)
        return Transaction(**entry_data)
