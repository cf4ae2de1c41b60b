"""Configuration management for the Settlement Reconciliation Engine"""

import os
import logging
from decimal import Decimal
from typing import List, Tuple

logger = logging.getLogger(__name__)


def _int_tuple(raw: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in raw.split(",") if part.strip())


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database configuration
    # Render/Heroku style postgres:// URLs are normalized for SQLAlchemy
    DATABASE_URL = os.getenv("DATABASE_URL", "")
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)
    if not DATABASE_URL:
        if IS_PRODUCTION:
            logger.error("❌ DATABASE_URL not configured! Please set DATABASE_URL environment variable.")
        DATABASE_URL = "sqlite:///./settlement.db"
        DATABASE_SOURCE = "Local SQLite (Development)"
    else:
        DATABASE_SOURCE = "PostgreSQL" if DATABASE_URL.startswith("postgresql") else "Custom"
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Webhook / admin surface
    BYBIT_WEBHOOK_SECRET = os.getenv("BYBIT_WEBHOOK_SECRET", "")
    ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "")
    WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
    WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "8000"))

    # Platform clients are built by factories outside this package ("module:callable")
    TRADING_CLIENT_FACTORY = os.getenv("TRADING_CLIENT_FACTORY", "")
    PAYOUT_FEED_FACTORY = os.getenv("PAYOUT_FEED_FACTORY", "")

    # ===== ACCOUNT CAPACITY =====
    MAX_ACTIVE_ADS_PER_ACCOUNT = int(os.getenv("MAX_ACTIVE_ADS_PER_ACCOUNT", "2"))
    PAYMENT_METHOD_CACHE_TTL = int(os.getenv("PAYMENT_METHOD_CACHE_TTL", "3600"))  # 1 hour
    LIVE_AD_COUNT_CACHE_TTL = int(os.getenv("LIVE_AD_COUNT_CACHE_TTL", "15"))  # seconds
    DEFAULT_PAYMENT_METHOD = os.getenv("DEFAULT_PAYMENT_METHOD", "SBP")

    # ===== ADVERTISEMENT PARAMETERS =====
    # Pricing is computed elsewhere; this is the fallback when no provider is wired
    DEFAULT_AD_PRICE = Decimal(os.getenv("DEFAULT_AD_PRICE", "85.00"))
    AD_QUANTITY_BUFFER_USDT = Decimal(os.getenv("AD_QUANTITY_BUFFER_USDT", "5"))
    AD_TOKEN = os.getenv("AD_TOKEN", "USDT")
    AD_FIAT_CURRENCY = os.getenv("AD_FIAT_CURRENCY", "RUB")
    AD_PAYMENT_PERIOD_MINUTES = int(os.getenv("AD_PAYMENT_PERIOD_MINUTES", "15"))
    AD_REMARK = os.getenv(
        "AD_REMARK",
        "Payment only from T-Bank. Send the PDF receipt to the e-mail from the chat.",
    )
    PRICE_MISMATCH_TOLERANCE = Decimal(os.getenv("PRICE_MISMATCH_TOLERANCE", "0.01"))

    # ===== PLATFORM STATUS CODES =====
    # Settlement platform payout statuses treated as "awaiting confirmation"
    AWAITING_PAYOUT_STATUSES: Tuple[int, ...] = _int_tuple(os.getenv("AWAITING_PAYOUT_STATUSES", "5,7"))
    # Recorded once the payout is approved on the settlement platform
    PAYOUT_STATUS_APPROVED = int(os.getenv("PAYOUT_STATUS_APPROVED", "7"))
    # Trading platform order statuses
    ORDER_STATUS_WAITING_PAYMENT = 10
    ORDER_STATUS_WAITING_RELEASE = 20
    ORDER_STATUS_APPEAL = 30
    ORDER_STATUS_CANCELLED = 40
    ORDER_STATUS_COMPLETED = 50
    ACTIVE_ORDER_STATUSES: Tuple[int, ...] = (ORDER_STATUS_WAITING_PAYMENT, ORDER_STATUS_WAITING_RELEASE)

    # ===== RECEIPT MATCHING =====
    PLATFORM_TIMEZONE = os.getenv("PLATFORM_TIMEZONE", "Europe/Moscow")
    PHONE_MATCH_DIGITS = int(os.getenv("PHONE_MATCH_DIGITS", "10"))
    CARD_MATCH_DIGITS = int(os.getenv("CARD_MATCH_DIGITS", "4"))
    FUZZY_AMOUNT_TOLERANCE_RUB = Decimal(os.getenv("FUZZY_AMOUNT_TOLERANCE_RUB", "100"))
    FUZZY_DISCOVERY_ENABLED = os.getenv("FUZZY_DISCOVERY_ENABLED", "true").lower() == "true"
    OWN_BANK_CODE = os.getenv("OWN_BANK_CODE", "tbank")
    RECEIPT_BATCH_SIZE = int(os.getenv("RECEIPT_BATCH_SIZE", "100"))

    # ===== CHAT AUTOMATION =====
    CHAT_GREETING = os.getenv(
        "CHAT_GREETING",
        "Hello! Please read the terms in the advertisement. "
        "Reply \"yes\" if you agree and I will send the payment details.",
    )
    CHAT_POSITIVE_ANSWERS: List[str] = [
        "да", "yes", "ок", "ok", "+", "хорошо", "конечно", "согласен", "согласна", "подтверждаю", "agree",
    ]
    CHAT_NEGATIVE_ANSWERS: List[str] = ["нет", "no", "не согласен", "не согласна", "отказ", "не буду", "не могу"]
    RECEIPT_EMAIL = os.getenv("RECEIPT_EMAIL", "receipts@example.com")
    CHAT_PAYMENT_INSTRUCTIONS = os.getenv(
        "CHAT_PAYMENT_INSTRUCTIONS",
        "After paying, send the PDF receipt from the bank's official address to the e-mail above "
        "and press the \"paid\" button on the order.",
    )

    # ===== FUND RELEASE / SAFETY =====
    FUND_RELEASE_DELAY_SECONDS = int(os.getenv("FUND_RELEASE_DELAY_SECONDS", "120"))  # 2 minutes
    UNBOUND_ORDER_STALE_SECONDS = int(os.getenv("UNBOUND_ORDER_STALE_SECONDS", "3600"))  # 1 hour
    ACCOUNT_CALL_TIMEOUT_SECONDS = float(os.getenv("ACCOUNT_CALL_TIMEOUT_SECONDS", "20"))

    # ===== SWEEP INTERVALS (seconds) =====
    PAYOUT_SYNC_INTERVAL = int(os.getenv("PAYOUT_SYNC_INTERVAL", "30"))
    ISSUANCE_INTERVAL = int(os.getenv("ISSUANCE_INTERVAL", "10"))
    ORDER_POLL_INTERVAL = int(os.getenv("ORDER_POLL_INTERVAL", "30"))
    CHAT_SYNC_INTERVAL = int(os.getenv("CHAT_SYNC_INTERVAL", "5"))
    RECEIPT_MATCH_INTERVAL = int(os.getenv("RECEIPT_MATCH_INTERVAL", "5"))
    CANCELLATION_INTERVAL = int(os.getenv("CANCELLATION_INTERVAL", "5"))
    FUND_RELEASE_INTERVAL = int(os.getenv("FUND_RELEASE_INTERVAL", "10"))
    APPEAL_SYNC_INTERVAL = int(os.getenv("APPEAL_SYNC_INTERVAL", "60"))
    AD_CLEANUP_INTERVAL = int(os.getenv("AD_CLEANUP_INTERVAL", "60"))
    STALE_ORDER_CHECK_INTERVAL = int(os.getenv("STALE_ORDER_CHECK_INTERVAL", "300"))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Settlement Engine Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_SOURCE}")
        logger.info(f"   Max ads per account: {Config.MAX_ACTIVE_ADS_PER_ACCOUNT}")
        logger.info(f"   Fund release delay: {Config.FUND_RELEASE_DELAY_SECONDS}s")
        logger.info(f"   Fuzzy tolerance: {Config.FUZZY_AMOUNT_TOLERANCE_RUB} RUB")

    @staticmethod
    def validate_production_config() -> List[str]:
        """Return a list of configuration problems that block a production start"""
        issues = []
        if Config.IS_PRODUCTION:
            if not os.getenv("DATABASE_URL"):
                issues.append("🚨 CRITICAL: DATABASE_URL not configured!")
            if not Config.BYBIT_WEBHOOK_SECRET:
                issues.append("🚨 CRITICAL: BYBIT_WEBHOOK_SECRET not configured - push events would be unauthenticated")
            if not Config.ADMIN_API_TOKEN:
                issues.append("🚨 CRITICAL: ADMIN_API_TOKEN not configured - override endpoints would be open")
        return issues
