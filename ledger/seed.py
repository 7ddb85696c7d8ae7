from datetime import datetime, timedelta, timezone
from decimal import Decimal

from .accounts import hash_password
from .storage import InMemoryStorage, USERS, CREDENTIALS, COUPONS

DEMO_PASSWORD = "password123"


def _user(user_id, name, phone, email, block, balance, deliveries, referral_code, is_admin=False, used=None):
    return {
        "id": user_id, "name": name, "phone": phone, "email": email, "block": block,
        "profile_photo_url": "", "college_id_url": "", "rating": Decimal("5.0"),
        "deliveries_completed": deliveries, "wallet_balance": Decimal(balance),
        "is_admin": is_admin, "referral_code": referral_code, "referred_by_code": None,
        "first_recharge_completed": True, "used_coupon_codes": used or {},
        "created_at": datetime.now(timezone.utc) - timedelta(days=10),
    }


def seed_demo_data(storage: InMemoryStorage) -> None:
    """Load the demo accounts and coupons. All demo users share one password."""
    users = [
        _user("admin-user-id", "Admin User", "0000000000", "admin@unihive.live", "Admin Block",
              "9999.00", 100, "ADMINREF", is_admin=True),
        _user("normal-user-id", "Normal User", "1234567890", "user@unihive.live", "Block A",
              "250.00", 12, "USERREF", used={"WELCOME10": 1}),
        _user("deliverer-user-id", "Deliverer Dave", "9876543210", "dave@unihive.live", "Block C",
              "800.00", 55, "DAVEREF"),
    ]

    with storage.transaction():
        for user in users:
            storage.put(USERS, user)
            storage.put(CREDENTIALS, {
                "id": user["id"], "email": user["email"], "password_hash": hash_password(DEMO_PASSWORD),
            })
        for coupon_id, code, pct, active, max_uses in (
            ("coupon-1", "WELCOME10", "0.1", True, 1),
            ("coupon-2", "RECHARGE20", "0.2", True, 3),
            ("coupon-3", "INACTIVE", "0.5", False, 1),
        ):
            storage.put(COUPONS, {
                "id": coupon_id, "code": code, "bonus_percentage": Decimal(pct),
                "is_active": active, "max_uses_per_user": max_uses,
            })
