"""Configuration management for the campus delivery ledger"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Fraction of each gig price retained by the platform on completion
    PLATFORM_FEE = Decimal(os.getenv("PLATFORM_FEE", "0.2"))
    OFFER_BAR_TEXT = os.getenv(
        "OFFER_BAR_TEXT",
        "Use code WELCOME10 for 10% bonus on your first wallet load! ;; Delivery fees starting from just ₹30!",
    )
    CURRENCY = os.getenv("CURRENCY", "INR")

    # Wallet rules
    MIN_WITHDRAWAL_AMOUNT = Decimal(os.getenv("MIN_WITHDRAWAL_AMOUNT", "100"))
    REFERRAL_MIN_RECHARGE = Decimal(os.getenv("REFERRAL_MIN_RECHARGE", "100"))
    REFERRAL_REFEREE_BONUS_RATE = Decimal(os.getenv("REFERRAL_REFEREE_BONUS_RATE", "0.05"))
    REFERRAL_REFERRER_REWARD = Decimal(os.getenv("REFERRAL_REFERRER_REWARD", "10"))

    # Expiry sweeper
    EXPIRY_SWEEP_INTERVAL_SECONDS = int(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "60"))
    EXPIRY_SWEEPER_ENABLED = _env_bool("EXPIRY_SWEEPER_ENABLED", True)

    SEED_DEMO_DATA = _env_bool("SEED_DEMO_DATA", False)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    PORT = int(os.getenv("PORT", "8000"))

    if not Decimal("0") <= PLATFORM_FEE <= Decimal("1"):
        logger.warning(f"PLATFORM_FEE={PLATFORM_FEE} is outside [0, 1], falling back to 0.2")
        PLATFORM_FEE = Decimal("0.2")


def configure_logging(level: str = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level or Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
