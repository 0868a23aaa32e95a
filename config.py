"""Configuration management for the payment verification service"""

import os
import logging
from decimal import Decimal
from typing import Dict, Any, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


def _get_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./payment_verification.db")
    DATABASE_ECHO = _get_bool("DATABASE_ECHO")

    # Bearer token verification (identity provider shares this secret)
    AUTH_TOKEN_SECRET = os.getenv("AUTH_TOKEN_SECRET", "")
    AUTH_TOKEN_TTL_SECONDS = int(os.getenv("AUTH_TOKEN_TTL_SECONDS", "3600"))

    # Text recognition (Google Cloud Vision REST)
    VISION_API_KEY = os.getenv("VISION_API_KEY", "")
    VISION_API_URL = os.getenv(
        "VISION_API_URL", "https://vision.googleapis.com/v1/images:annotate"
    )
    VISION_TIMEOUT_SECONDS = int(os.getenv("VISION_TIMEOUT_SECONDS", "30"))
    VISION_LANGUAGE_HINTS = _get_list("VISION_LANGUAGE_HINTS", "en,fil")

    # Screenshot fetching
    TRUSTED_STORAGE_HOSTS = _get_list(
        "TRUSTED_STORAGE_HOSTS", "firebasestorage.googleapis.com,storage.googleapis.com"
    )
    MAX_SCREENSHOT_URL_LENGTH = int(os.getenv("MAX_SCREENSHOT_URL_LENGTH", "2048"))
    MAX_SCREENSHOT_BYTES = int(os.getenv("MAX_SCREENSHOT_BYTES", str(10 * 1024 * 1024)))
    IMAGE_FETCH_TIMEOUT_SECONDS = int(os.getenv("IMAGE_FETCH_TIMEOUT_SECONDS", "20"))

    # Pipeline dispatch
    PIPELINE_TIMEOUT_SECONDS = int(os.getenv("PIPELINE_TIMEOUT_SECONDS", "120"))
    PIPELINE_WORKER_COUNT = int(os.getenv("PIPELINE_WORKER_COUNT", "4"))
    PIPELINE_QUEUE_MAXSIZE = int(os.getenv("PIPELINE_QUEUE_MAXSIZE", "1000"))
    TRANSACTION_MAX_RETRIES = int(os.getenv("TRANSACTION_MAX_RETRIES", "5"))

    # Decision thresholds
    AUTO_APPROVE_THRESHOLD = int(os.getenv("AUTO_APPROVE_THRESHOLD", "10"))
    MANUAL_REVIEW_THRESHOLD = int(os.getenv("MANUAL_REVIEW_THRESHOLD", "30"))
    AUTO_REJECT_THRESHOLD = int(os.getenv("AUTO_REJECT_THRESHOLD", "70"))

    # Receipt validation
    MIN_OCR_CONFIDENCE = int(os.getenv("MIN_OCR_CONFIDENCE", "60"))
    DEFAULT_VISION_CONFIDENCE = int(os.getenv("DEFAULT_VISION_CONFIDENCE", "70"))
    AMOUNT_TOLERANCE_PERCENT = Decimal(os.getenv("AMOUNT_TOLERANCE_PERCENT", "0"))
    MAX_AUTO_APPROVE_AMOUNT = Decimal(os.getenv("MAX_AUTO_APPROVE_AMOUNT", "10000"))
    MAX_RECEIPT_AGE_MINUTES = int(os.getenv("MAX_RECEIPT_AGE_MINUTES", "30"))
    RECEIPT_CLOCK_SKEW_MINUTES = int(os.getenv("RECEIPT_CLOCK_SKEW_MINUTES", "5"))
    # Wallet apps print local (Philippine) time on receipts
    RECEIPT_UTC_OFFSET_HOURS = int(os.getenv("RECEIPT_UTC_OFFSET_HOURS", "8"))

    # Orders
    ORDER_EXPIRY_MINUTES = int(os.getenv("ORDER_EXPIRY_MINUTES", "30"))
    MAX_TOPUP_AMOUNT = Decimal(os.getenv("MAX_TOPUP_AMOUNT", "50000"))
    MAX_DAILY_TOPUP_ORDERS = int(os.getenv("MAX_DAILY_TOPUP_ORDERS", "5"))

    # Account velocity
    HIGH_VALUE_THRESHOLD = Decimal(os.getenv("HIGH_VALUE_THRESHOLD", "5000"))
    MAX_DAILY_SUBMISSIONS = int(os.getenv("MAX_DAILY_SUBMISSIONS", "5"))
    MAX_HOURLY_SUBMISSIONS = int(os.getenv("MAX_HOURLY_SUBMISSIONS", "3"))
    NEW_ACCOUNT_DAYS = int(os.getenv("NEW_ACCOUNT_DAYS", "7"))

    # Image forensics
    MIN_IMAGE_WIDTH = int(os.getenv("MIN_IMAGE_WIDTH", "300"))
    MIN_IMAGE_HEIGHT = int(os.getenv("MIN_IMAGE_HEIGHT", "400"))
    MAX_IMAGE_WIDTH = int(os.getenv("MAX_IMAGE_WIDTH", "4000"))
    MAX_IMAGE_HEIGHT = int(os.getenv("MAX_IMAGE_HEIGHT", "6000"))
    SIMILAR_HASH_THRESHOLD = float(os.getenv("SIMILAR_HASH_THRESHOLD", "0.9"))
    DUPLICATE_HASH_THRESHOLD = float(os.getenv("DUPLICATE_HASH_THRESHOLD", "0.99"))
    SIMILAR_IMAGE_SCAN_LIMIT = int(os.getenv("SIMILAR_IMAGE_SCAN_LIMIT", "5000"))

    # Points contributed by each fraud rule when it triggers
    FRAUD_SCORES: Dict[str, int] = {
        "AMOUNT_MISMATCH": int(os.getenv("FRAUD_SCORE_AMOUNT_MISMATCH", "40")),
        "DUPLICATE_REFERENCE": int(os.getenv("FRAUD_SCORE_DUPLICATE_REFERENCE", "50")),
        "DUPLICATE_IMAGE": int(os.getenv("FRAUD_SCORE_DUPLICATE_IMAGE", "50")),
        "SIMILAR_IMAGE": int(os.getenv("FRAUD_SCORE_SIMILAR_IMAGE", "30")),
        "RECEIVER_MISMATCH": int(os.getenv("FRAUD_SCORE_RECEIVER_MISMATCH", "25")),
        "NEW_ACCOUNT_HIGH_VALUE": int(os.getenv("FRAUD_SCORE_NEW_ACCOUNT_HIGH_VALUE", "25")),
        "TIMESTAMP_EXPIRED": int(os.getenv("FRAUD_SCORE_TIMESTAMP_EXPIRED", "20")),
        "VELOCITY_EXCEEDED": int(os.getenv("FRAUD_SCORE_VELOCITY_EXCEEDED", "20")),
        "LOW_OCR_CONFIDENCE": int(os.getenv("FRAUD_SCORE_LOW_OCR_CONFIDENCE", "15")),
        "MISSING_REQUIRED_FIELDS": int(os.getenv("FRAUD_SCORE_MISSING_REQUIRED_FIELDS", "15")),
        "SUSPICIOUS_DIMENSIONS": int(os.getenv("FRAUD_SCORE_SUSPICIOUS_DIMENSIONS", "10")),
        "MISSING_EXIF": int(os.getenv("FRAUD_SCORE_MISSING_EXIF", "5")),
    }

    # Outstanding platform fee exposure caps
    FEE_CAP_UNVERIFIED = Decimal(os.getenv("FEE_CAP_UNVERIFIED", "2000"))
    FEE_CAP_NEW_ACCOUNT = Decimal(os.getenv("FEE_CAP_NEW_ACCOUNT", "3000"))
    FEE_CAP_STANDARD = Decimal(os.getenv("FEE_CAP_STANDARD", "5000"))
    FEE_CAP_NEW_ACCOUNT_DAYS = int(os.getenv("FEE_CAP_NEW_ACCOUNT_DAYS", "30"))
    FEE_PAYMENT_GRACE_DAYS = int(os.getenv("FEE_PAYMENT_GRACE_DAYS", "3"))
    UNPAID_FEES_SUSPENSION_REASON = "unpaid_platform_fees"

    # Platform settings defaults (overridden by system_config rows)
    SETTINGS_CACHE_TTL_SECONDS = int(os.getenv("SETTINGS_CACHE_TTL_SECONDS", "30"))
    DEFAULT_PLATFORM_FEE_PERCENTAGE = Decimal(os.getenv("DEFAULT_PLATFORM_FEE_PERCENTAGE", "5"))
    DEFAULT_PLATFORM_MINIMUM_FEE = Decimal(os.getenv("DEFAULT_PLATFORM_MINIMUM_FEE", "50"))
    DEFAULT_PLATFORM_MAXIMUM_FEE = Decimal(os.getenv("DEFAULT_PLATFORM_MAXIMUM_FEE", "2000"))
    RECEIVING_ACCOUNT_NAME = os.getenv("RECEIVING_ACCOUNT_NAME", "")
    RECEIVING_ACCOUNT_NUMBER = os.getenv("RECEIVING_ACCOUNT_NUMBER", "")
    PAYMENT_VERIFICATION_ENABLED = _get_bool("PAYMENT_VERIFICATION_ENABLED", "true")
    AUTO_APPROVE_LOW_RISK = _get_bool("AUTO_APPROVE_LOW_RISK", "true")

    # Scheduled jobs
    FEE_RECONCILIATION_INTERVAL_MINUTES = int(os.getenv("FEE_RECONCILIATION_INTERVAL_MINUTES", "30"))
    FEE_RECONCILIATION_BATCH_SIZE = int(os.getenv("FEE_RECONCILIATION_BATCH_SIZE", "100"))
    FEE_ENFORCEMENT_INTERVAL_MINUTES = int(os.getenv("FEE_ENFORCEMENT_INTERVAL_MINUTES", "60"))
    ORDER_EXPIRY_SWEEP_MINUTES = int(os.getenv("ORDER_EXPIRY_SWEEP_MINUTES", "5"))
    SUBMISSION_RECOVERY_INTERVAL_MINUTES = int(os.getenv("SUBMISSION_RECOVERY_INTERVAL_MINUTES", "2"))

    # HTTP server
    SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
    SERVER_PORT = int(os.getenv("PORT", "8000"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def validate_configuration(cls) -> Dict[str, Any]:
        """Check required secrets and threshold ordering, logging anything off"""
        issues = []

        if not cls.AUTH_TOKEN_SECRET:
            issues.append("AUTH_TOKEN_SECRET is not set - bearer tokens cannot be verified")
        if not cls.VISION_API_KEY:
            issues.append("VISION_API_KEY is not set - text recognition will fail")
        if not cls.RECEIVING_ACCOUNT_NUMBER:
            issues.append("RECEIVING_ACCOUNT_NUMBER is not set - orders will show no receiving account")
        if not cls.AUTO_APPROVE_THRESHOLD < cls.AUTO_REJECT_THRESHOLD:
            issues.append("AUTO_APPROVE_THRESHOLD must be below AUTO_REJECT_THRESHOLD")
        if not cls.FEE_CAP_UNVERIFIED <= cls.FEE_CAP_NEW_ACCOUNT <= cls.FEE_CAP_STANDARD:
            issues.append("Fee caps should grow with account trust (unverified <= new <= standard)")

        for issue in issues:
            if cls.IS_PRODUCTION:
                logger.error(f"❌ CONFIG: {issue}")
            else:
                logger.warning(f"⚠️ CONFIG: {issue}")

        if not issues:
            logger.info(f"✅ Configuration validated for {cls.CURRENT_ENVIRONMENT}")

        return {"valid": not issues, "issues": issues}
