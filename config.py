"""Configuration management for the marketplace escrow settlement service"""

import os
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)


def _validate_percentage(env_var: str, default: str, min_val: float = 0.0, max_val: float = 100.0) -> Decimal:
    """Read a percentage from the environment, falling back to the default when out of range"""
    raw_value = os.getenv(env_var, default)
    try:
        value = Decimal(raw_value)
    except (InvalidOperation, TypeError):
        logger.warning(f"⚠️ CONFIG: {env_var}={raw_value!r} is not a number, using default {default}")
        return Decimal(default)

    if value < Decimal(str(min_val)) or value > Decimal(str(max_val)):
        logger.warning(
            f"⚠️ CONFIG: {env_var}={value} outside allowed range [{min_val}, {max_val}], "
            f"using default {default}"
        )
        return Decimal(default)
    return value


def _validate_positive_int(env_var: str, default: str, min_val: int = 1) -> int:
    raw_value = os.getenv(env_var, default)
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ CONFIG: {env_var}={raw_value!r} is not an integer, using default {default}")
        return int(default)
    if value < min_val:
        logger.warning(f"⚠️ CONFIG: {env_var}={value} below minimum {min_val}, using default {default}")
        return int(default)
    return value


def _optional_decimal(env_var: str, default: str) -> Optional[Decimal]:
    """Empty string disables the setting (returns None)"""
    raw_value = os.getenv(env_var, default).strip()
    if not raw_value:
        return None
    try:
        return Decimal(raw_value)
    except InvalidOperation:
        logger.warning(f"⚠️ CONFIG: {env_var}={raw_value!r} is not a number, using default {default}")
        return Decimal(default) if default else None


def _optional_int(env_var: str) -> Optional[int]:
    raw_value = os.getenv(env_var, "").strip()
    if not raw_value:
        return None
    try:
        value = int(raw_value)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {env_var}={raw_value!r} is not an integer, ignoring")
        return None
    return value if value > 0 else None


class Config:
    """Application configuration"""

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///escrow_settlement.db")
    SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"

    # Money policy
    COMMISSION_RATE_PERCENT = _validate_percentage("COMMISSION_RATE_PERCENT", "5.0", 0.0, 50.0)
    TAX_RATE_PERCENT = _validate_percentage("TAX_RATE_PERCENT", "8.0", 0.0, 50.0)
    FREE_SHIPPING_THRESHOLD = _optional_decimal("FREE_SHIPPING_THRESHOLD", "100.00")
    FLAT_SHIPPING_FEE = Decimal(os.getenv("FLAT_SHIPPING_FEE", "10.00"))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "ZMW")
    SUPPORTED_CURRENCIES = ["ZMW", "USD", "EUR", "GBP"]

    # Escrow lifecycle
    ESCROW_HOLD_PERIOD_DAYS = _validate_positive_int("ESCROW_HOLD_PERIOD_DAYS", "7")
    RETURN_PERIOD_DAYS = _validate_positive_int("RETURN_PERIOD_DAYS", "30", min_val=0)
    ESCROW_ACTIVITY_LOG_MAX_ENTRIES = _optional_int("ESCROW_ACTIVITY_LOG_MAX_ENTRIES")

    # Auto-release
    AUTO_RELEASE_ENABLED = os.getenv("AUTO_RELEASE_ENABLED", "True").lower() == "true"
    AUTO_RELEASE_INTERVAL_MINUTES = _validate_positive_int("AUTO_RELEASE_INTERVAL_MINUTES", "10")
    AUTO_RELEASE_WARNING_HOURS = _validate_positive_int("AUTO_RELEASE_WARNING_HOURS", "24")

    # Monitoring
    CONSISTENCY_CHECK_INTERVAL_MINUTES = _validate_positive_int("CONSISTENCY_CHECK_INTERVAL_MINUTES", "15")

    # Audit
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", "").strip() or None

    # Seller view: share buyer contact details with sellers
    SHARE_BUYER_CONTACT_WITH_SELLERS = os.getenv("SHARE_BUYER_CONTACT_WITH_SELLERS", "false").lower() == "true"

    if DEFAULT_CURRENCY not in SUPPORTED_CURRENCIES:
        logger.warning(f"⚠️ CONFIG: Unsupported DEFAULT_CURRENCY {DEFAULT_CURRENCY}, falling back to ZMW")
        DEFAULT_CURRENCY = "ZMW"
