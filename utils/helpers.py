"""Helper utilities for the escrow settlement service"""

import secrets
import string
import time
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_ALPHANUMERIC = string.ascii_uppercase + string.digits
_BASE36 = string.digits + string.ascii_uppercase


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


def _timestamp_token() -> str:
    """Millisecond timestamp in base 36, upper case"""
    value = int(time.time() * 1000)
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_unique_id(prefix: str, random_length: int = 5) -> str:
    """PREFIX-<timestamp>-<random>"""
    return f"{prefix.upper()}-{_timestamp_token()}-{_random_suffix(random_length)}"


def generate_order_number() -> str:
    return generate_unique_id("ORD")


def generate_escrow_number() -> str:
    return generate_unique_id("ESC")


def generate_payment_reference() -> str:
    return generate_unique_id("TXN", random_length=9)


def generate_buyer_reference() -> str:
    """Opaque token shown to sellers in place of the buyer's identity"""
    return f"BUY-{_random_suffix(8)}"


def format_amount(amount: Any, currency: str) -> str:
    return f"{Decimal(str(amount)):.2f} {currency}"


def mask_shipping_address(address: Optional[Dict[str, Any]], share_contact: bool = False) -> Dict[str, Any]:
    """Address as sellers see it: location only unless contact sharing is enabled"""
    address = address or {}
    if share_contact:
        return dict(address)
    return {
        "city": address.get("city"),
        "state": address.get("state"),
        "country": address.get("country"),
        "instructions": address.get("instructions"),
    }
