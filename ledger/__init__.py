"""
Wallet Ledger and Gig Lifecycle for a Campus Parcel-Delivery Marketplace

This module provides:
- Immutable transaction records paired with every wallet balance change
- Top-up and withdrawal request workflows: pending → approved / processed / rejected
- Gig lifecycle with escrow: open → accepted → completed, or open → expired / deleted
- Server-side expiry of overdue gigs
- Atomic, rollback-on-failure storage transactions
"""

from .models import (
    TransactionType,
    GigStatus,
    WalletRequestStatus,
    WithdrawalRequestStatus,
    User,
    Gig,
    Transaction,
    Coupon,
)
from .service import LedgerService
from .platform import CampusDeliveryPlatform

__all__ = [
    "TransactionType",
    "GigStatus",
    "WalletRequestStatus",
    "WithdrawalRequestStatus",
    "User",
    "Gig",
    "Transaction",
    "Coupon",
    "LedgerService",
    "CampusDeliveryPlatform",
]
