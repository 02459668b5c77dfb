"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import List, Sequence, Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    MONEY_PRECISION = Decimal("0.01")
    RATE_PRECISION = Decimal("0.0001")
    ZERO = Decimal("0.00")

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Convert any numeric value to Decimal, rejecting values that cannot be money"""
        if value is None:
            return Decimal("0")

        if isinstance(value, Decimal):
            return value

        if isinstance(value, bool):
            raise ValueError(f"Boolean is not a monetary value ({context})")

        try:
            # Convert to string first to avoid float precision issues
            decimal_value = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
            raise ValueError(f"Invalid monetary value {value!r} ({context})") from e

        if not decimal_value.is_finite():
            raise ValueError(f"Non-finite monetary value {value!r} ({context})")

        if abs(decimal_value) > Decimal("999999999999"):
            logger.warning(f"Unusually large monetary value: {decimal_value} in context: {context}")

        return decimal_value

    @classmethod
    def quantize(cls, amount: Numeric) -> Decimal:
        """Quantize amount to currency precision (2 decimal places, half up)"""
        return cls.to_decimal(amount).quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def percentage_of(cls, amount: Numeric, rate_percent: Numeric) -> Decimal:
        """round(amount * rate / 100) at currency precision"""
        amount_decimal = cls.to_decimal(amount, "percentage_amount")
        rate_decimal = cls.to_decimal(rate_percent, "percentage_rate")
        return cls.quantize(amount_decimal * rate_decimal / Decimal("100"))

    @classmethod
    def add_precise(cls, *amounts: Numeric) -> Decimal:
        total = Decimal("0")
        for amount in amounts:
            total += cls.to_decimal(amount, "addition")
        return cls.quantize(total)

    @classmethod
    def subtract_precise(cls, minuend: Numeric, subtrahend: Numeric) -> Decimal:
        result = cls.to_decimal(minuend, "subtraction_minuend") - cls.to_decimal(
            subtrahend, "subtraction_subtrahend"
        )
        return cls.quantize(result)

    @classmethod
    def to_cents(cls, amount: Numeric) -> int:
        return int(cls.quantize(amount) * 100)

    @classmethod
    def from_cents(cls, cents: int) -> Decimal:
        return (Decimal(cents) / Decimal(100)).quantize(cls.MONEY_PRECISION)

    @classmethod
    def allocate_proportionally(cls, total: Numeric, weights: Sequence[Numeric]) -> List[Decimal]:
        """
        Split `total` across `weights` proportionally, in whole cents.

        Each share is floored to the cent; leftover cents go to the entry with
        the largest weight (earliest wins ties) so the shares always sum to
        exactly `total`.
        """
        if not weights:
            return []

        total_cents = cls.to_cents(total)
        weight_cents = [cls.to_cents(w) for w in weights]
        weight_sum = sum(weight_cents)

        if total_cents < 0:
            raise ValueError("Cannot allocate a negative amount")
        if weight_sum <= 0:
            if total_cents:
                raise ValueError("Cannot allocate a nonzero amount across zero weights")
            return [cls.ZERO for _ in weights]

        shares = [total_cents * w // weight_sum for w in weight_cents]
        remainder = total_cents - sum(shares)
        if remainder:
            largest_index = max(range(len(weight_cents)), key=lambda i: (weight_cents[i], -i))
            shares[largest_index] += remainder

        return [cls.from_cents(share) for share in shares]

    @classmethod
    def validate_non_negative(cls, amount: Numeric, field_name: str = "amount") -> Decimal:
        value = cls.to_decimal(amount, field_name)
        if value < 0:
            raise ValueError(f"{field_name} cannot be negative: {value}")
        return value
