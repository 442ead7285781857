"""Configuration management for the wallet ledger and payment gateway service"""

import os
import logging
from typing import Dict, List

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Local development convenience; real deployments inject the environment directly
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT in ("production", "prod")
    DEBUG = _env_bool("DEBUG")

    # Database configuration
    # postgresql:// URLs are rewritten for asyncpg in database.py
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./wallet_ledger.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO")

    # Ledger
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "NGN")
    INTEGRITY_TOLERANCE_KOBO = int(os.getenv("INTEGRITY_TOLERANCE_KOBO", "0"))

    # Wallet funding limits, in naira
    MIN_FUNDING_AMOUNT_NGN = int(os.getenv("MIN_FUNDING_AMOUNT_NGN", "100"))
    MAX_FUNDING_AMOUNT_NGN = int(os.getenv("MAX_FUNDING_AMOUNT_NGN", "1000000"))
    AMOUNT_MISMATCH_TOLERANCE_KOBO = int(os.getenv("AMOUNT_MISMATCH_TOLERANCE_KOBO", "0"))

    # Paystack (static secret key; the same key signs webhooks)
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    PAYSTACK_CALLBACK_URL = os.getenv("PAYSTACK_CALLBACK_URL")

    # Monnify (client credentials; the secret key signs webhooks)
    MONNIFY_API_KEY = os.getenv("MONNIFY_API_KEY")
    MONNIFY_SECRET_KEY = os.getenv("MONNIFY_SECRET_KEY")
    MONNIFY_CONTRACT_CODE = os.getenv("MONNIFY_CONTRACT_CODE")
    MONNIFY_BASE_URL = os.getenv("MONNIFY_BASE_URL", "https://sandbox.monnify.com")
    MONNIFY_REDIRECT_URL = os.getenv("MONNIFY_REDIRECT_URL")
    MONNIFY_PREFERRED_BANKS: List[str] = [
        code.strip()
        for code in os.getenv("MONNIFY_PREFERRED_BANKS", "035,058,011").split(",")
        if code.strip()
    ]

    # Outbound gateway calls
    GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))
    GATEWAY_TOKEN_REFRESH_MARGIN_SECONDS = float(
        os.getenv("GATEWAY_TOKEN_REFRESH_MARGIN_SECONDS", "60")
    )

    # Read-only verify polling when a gateway is unreachable
    VERIFY_MAX_ATTEMPTS = int(os.getenv("VERIFY_MAX_ATTEMPTS", "3"))
    VERIFY_RETRY_DELAY_SECONDS = float(os.getenv("VERIFY_RETRY_DELAY_SECONDS", "1.0"))

    # Virtual account lookup races the bank's transfer notification
    VIRTUAL_ACCOUNT_LOOKUP_MAX_ATTEMPTS = int(os.getenv("VIRTUAL_ACCOUNT_LOOKUP_MAX_ATTEMPTS", "3"))
    VIRTUAL_ACCOUNT_LOOKUP_DELAY_SECONDS = float(
        os.getenv("VIRTUAL_ACCOUNT_LOOKUP_DELAY_SECONDS", "1.0")
    )
    VIRTUAL_ACCOUNT_LOOKUP_BACKOFF = float(os.getenv("VIRTUAL_ACCOUNT_LOOKUP_BACKOFF", "1.0"))

    # Webhook signature headers per gateway
    WEBHOOK_SIGNATURE_HEADERS: Dict[str, str] = {
        "paystack": "x-paystack-signature",
        "monnify": "monnify-signature",
    }

    # Operations endpoints (reconcile, webhook replay); unset disables them
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")
    RECONCILE_DEFAULT_DAYS = int(os.getenv("RECONCILE_DEFAULT_DAYS", "7"))

    @staticmethod
    def webhook_secret(gateway: str):
        """Return the shared secret used to sign a gateway's webhooks"""
        secrets = {
            "paystack": Config.PAYSTACK_SECRET_KEY,
            "monnify": Config.MONNIFY_SECRET_KEY,
        }
        return secrets.get(gateway)

    @staticmethod
    def validate_gateway_configuration() -> Dict[str, bool]:
        """Log which payment gateways are usable with the current environment"""
        status = {
            "paystack": bool(Config.PAYSTACK_SECRET_KEY),
            "monnify": bool(
                Config.MONNIFY_API_KEY and Config.MONNIFY_SECRET_KEY and Config.MONNIFY_CONTRACT_CODE
            ),
        }

        logger.info(f"🔧 Gateway Configuration ({Config.ENVIRONMENT.upper()}):")
        for gateway, ready in status.items():
            if ready:
                logger.info(f"   ✅ {gateway}: configured")
            elif Config.IS_PRODUCTION:
                logger.error(f"   ❌ {gateway}: missing credentials in production")
            else:
                logger.warning(f"   ⚠️ {gateway}: missing credentials, calls will be rejected")

        if Config.MIN_FUNDING_AMOUNT_NGN > Config.MAX_FUNDING_AMOUNT_NGN:
            logger.error(
                f"❌ FUNDING_LIMITS: min {Config.MIN_FUNDING_AMOUNT_NGN} exceeds max {Config.MAX_FUNDING_AMOUNT_NGN}"
            )

        return status
