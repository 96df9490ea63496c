"""Configuration management for the marketplace order and dispute engine"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///marketplace.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Currency and precision
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "GBP").upper()
    SUPPORTED_CURRENCIES = tuple(
        c.strip().upper()
        for c in os.getenv("SUPPORTED_CURRENCIES", "GBP,EUR,USD").split(",")
        if c.strip()
    )
    AMOUNT_PRECISION = Decimal("0.01")

    # Order pricing (UK standard VAT, platform commission recorded at creation)
    VAT_RATE = Decimal(os.getenv("VAT_RATE", "0.20"))
    ORDER_PLATFORM_FEE_PERCENTAGE = Decimal(
        os.getenv("ORDER_PLATFORM_FEE_PERCENTAGE", "5")
    )

    # Fee deducted from every release before funds reach the seller
    RELEASE_PLATFORM_FEE_PERCENTAGE = Decimal(
        os.getenv("RELEASE_PLATFORM_FEE_PERCENTAGE", "8")
    )

    # Dispute auto-resolution heuristics
    DISPUTE_SELLER_RESPONSE_DAYS = int(os.getenv("DISPUTE_SELLER_RESPONSE_DAYS", "7"))
    DISPUTE_MIN_EVIDENCE_ITEMS = int(os.getenv("DISPUTE_MIN_EVIDENCE_ITEMS", "1"))
    DISPUTE_MIN_REASON_LENGTH = int(os.getenv("DISPUTE_MIN_REASON_LENGTH", "50"))
    DISPUTE_AUTO_RESOLUTION_SCAN_MINUTES = int(
        os.getenv("DISPUTE_AUTO_RESOLUTION_SCAN_MINUTES", "60")
    )

    # Listing
    ORDER_LIST_DEFAULT_LIMIT = int(os.getenv("ORDER_LIST_DEFAULT_LIMIT", "20"))

    # Payment provider
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
    PAYMENT_API_TIMEOUT_SECONDS = int(os.getenv("PAYMENT_API_TIMEOUT_SECONDS", "30"))

    # Links embedded in notifications
    APP_BASE_PATH = os.getenv("APP_BASE_PATH", "")

    @classmethod
    def order_link(cls, order_id: str) -> str:
        return f"{cls.APP_BASE_PATH}/orders/{order_id}"

    @classmethod
    def dispute_link(cls, dispute_id: str) -> str:
        return f"{cls.APP_BASE_PATH}/disputes/{dispute_id}"

    @classmethod
    def log_environment_config(cls):
        """Log the active configuration with secrets masked"""
        db_scheme = cls.DATABASE_URL.split("://", 1)[0] if cls.DATABASE_URL else "unset"
        stripe_state = "configured" if cls.STRIPE_SECRET_KEY else "missing"

        logger.info(f"🔧 CONFIG: environment={cls.ENVIRONMENT} production={cls.IS_PRODUCTION}")
        logger.info(f"🔧 CONFIG: database={db_scheme} echo={cls.DATABASE_ECHO}")
        logger.info(
            f"🔧 CONFIG: currency={cls.DEFAULT_CURRENCY} vat_rate={cls.VAT_RATE} "
            f"order_fee={cls.ORDER_PLATFORM_FEE_PERCENTAGE}% "
            f"release_fee={cls.RELEASE_PLATFORM_FEE_PERCENTAGE}%"
        )
        logger.info(
            f"🔧 CONFIG: dispute seller_response_days={cls.DISPUTE_SELLER_RESPONSE_DAYS} "
            f"min_evidence={cls.DISPUTE_MIN_EVIDENCE_ITEMS} "
            f"min_reason_length={cls.DISPUTE_MIN_REASON_LENGTH}"
        )
        if not cls.STRIPE_SECRET_KEY:
            logger.warning(f"⚠️ CONFIG: Stripe secret key {stripe_state} - payouts will fail")
