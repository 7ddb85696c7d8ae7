import hashlib
import hmac
import logging
import re
import secrets
import string
from decimal import Decimal
from typing import Optional

from .models import User, SignupRequest, SessionResponse
from .service import (
    LedgerService,
    Clock,
    utc_now,
    DuplicateError,
    InvalidCredentialsError,
    NotFoundError,
    PermissionDeniedError,
    UnauthenticatedError,
)
from .storage import InMemoryStorage, USERS, CREDENTIALS, SESSIONS

logger = logging.getLogger(__name__)

_PBKDF2_ITERATIONS = 120_000
_BASE36 = string.digits + string.ascii_lowercase


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    salt = salt or secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, _PBKDF2_ITERATIONS)
    return f"{salt.hex()}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    salt_hex, digest_hex = stored.split("$", 1)
    candidate = hash_password(password, bytes.fromhex(salt_hex)).split("$", 1)[1]
    return hmac.compare_digest(candidate, digest_hex)


def make_referral_code(name: str) -> str:
    first = name.split(" ")[0].lower() if name else ""
    prefix = re.sub(r"[^a-z0-9]", "", first)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"{prefix}{suffix}".upper()


class AccountService:
    def __init__(self, storage: InMemoryStorage, ledger: LedgerService, clock: Clock = utc_now):
        self.storage = storage
        self.ledger = ledger
        self.clock = clock

    def signup(self, request: SignupRequest) -> SessionResponse:
        email = request.email.strip().lower()
        with self.storage.transaction():
            if self.storage.find_one(CREDENTIALS, lambda c: c["email"] == email):
                raise DuplicateError(f"An account with email {email} already exists")

            referral_code = make_referral_code(request.name)
            while self.storage.find_one(USERS, lambda u: u["referral_code"] == referral_code):
                referral_code = make_referral_code(request.name)

            referred_by = (request.referred_by_code or "").strip().upper() or None
            user_data = User(
                id=self.storage.new_id(),
                name=request.name,
                phone=request.phone,
                email=email,
                block=request.block,
                profile_photo_url=request.profile_photo_url,
                college_id_url=request.college_id_url,
                rating=Decimal("5.0"),
                deliveries_completed=0,
                wallet_balance=Decimal("0.00"),
                is_admin=False,
                referral_code=referral_code,
                referred_by_code=referred_by,
                first_recharge_completed=False,
                used_coupon_codes={},
                created_at=self.clock(),
            ).model_dump()
            self.storage.put(USERS, user_data)
            self.storage.put(CREDENTIALS, {
                "id": user_data["id"],
                "email": email,
                "password_hash": hash_password(request.password),
            })
            token = self._open_session(user_data["id"])

        logger.info(f"New user {user_data['id']} signed up (referred by {referred_by or 'nobody'})")
        return SessionResponse(token=token, user=User(**user_data))

    def login(self, email: str, password: str) -> SessionResponse:
        email = email.strip().lower()
        credentials = self.storage.find_one(CREDENTIALS, lambda c: c["email"] == email)
        if not credentials or not verify_password(password, credentials["password_hash"]):
            raise InvalidCredentialsError("Invalid email or password")
        user = self.storage.get(USERS, credentials["id"])
        if not user:
            raise InvalidCredentialsError("Invalid email or password")
        token = self._open_session(user["id"])
        return SessionResponse(token=token, user=User(**user))

    def logout(self, token: str) -> bool:
        return self.storage.delete(SESSIONS, token)

    def resolve_session(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        session = self.storage.get(SESSIONS, token)
        if not session or not self.storage.get(USERS, session["user_id"]):
            return None
        return session["user_id"]

    def require_actor(self, actor_id: Optional[str]) -> dict:
        if not actor_id:
            raise UnauthenticatedError("Sign in to continue")
        user = self.storage.get(USERS, actor_id)
        if not user:
            raise UnauthenticatedError("Signed-in user no longer exists")
        return user

    def require_admin(self, actor_id: Optional[str]) -> dict:
        user = self.require_actor(actor_id)
        if not user.get("is_admin"):
            raise PermissionDeniedError("Administrator access required")
        return user

    def find_by_phone(self, phone: str) -> dict:
        user = self.storage.find_one(USERS, lambda u: u["phone"] == phone)
        if not user:
            raise NotFoundError(f"No user with phone {phone}")
        return user

    def _open_session(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        self.storage.put(SESSIONS, {"id": token, "user_id": user_id, "created_at": self.clock()})
        return token
