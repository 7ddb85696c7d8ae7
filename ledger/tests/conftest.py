from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ledger.models import SignupRequest, TransactionType
from ledger.platform import CampusDeliveryPlatform
from ledger.storage import USERS


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def platform(clock):
    return CampusDeliveryPlatform(clock=clock, platform_fee=Decimal("0.2"))


@pytest.fixture
def make_user(platform):
    counter = {"n": 0}

    def _make_user(name="Test User", balance="0", referred_by_code=None, is_admin=False):
        counter["n"] += 1
        session = platform.signup(SignupRequest(
            name=name,
            phone=f"90000000{counter['n']:02d}",
            email=f"user{counter['n']}@campus.edu",
            password="secret123",
            block="Block A",
            referred_by_code=referred_by_code,
        ))
        user_id = session.user.id
        if Decimal(balance) > 0:
            platform.ledger.credit(user_id, Decimal(balance), "Opening balance", entry_type=TransactionType.TOPUP)
        if is_admin:
            platform.storage.update(USERS, user_id, {"is_admin": True})
        return platform.storage.get(USERS, user_id)

    return _make_user


@pytest.fixture
def admin(make_user):
    return make_user(name="Admin User", is_admin=True)
