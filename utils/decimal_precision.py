#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary and NUMERIC(p, s) columns
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Optional, Tuple, Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    USD_PRECISION = Decimal("0.01")  # 2 decimal places for fiat
    CRYPTO_PRECISION = Decimal("0.00000001")  # 8 decimal places for crypto

    # Currencies Stripe bills without a minor unit
    ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "UGX"})

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """
        Convert a numeric value to Decimal.

        Unlike a lenient parse this raises on garbage: a silently zeroed amount
        is worse than a rejected payload.
        """
        if isinstance(value, bool):
            raise ValueError(f"Boolean is not a numeric value in context {context}")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                raise ValueError(f"Invalid numeric value {value!r} in context {context}") from e

        if not decimal_value.is_finite():
            raise ValueError(f"Non-finite value {value!r} in context {context}")

        if abs(decimal_value) > Decimal("999999999999"):
            logger.warning(
                f"Unusually large monetary value: {decimal_value} in context: {context}"
            )

        return decimal_value

    @staticmethod
    def digits_and_scale(value: Decimal) -> Tuple[int, int]:
        """Return (integer digits, fractional digits) of a finite Decimal"""
        sign, digits, exponent = value.normalize().as_tuple()
        if exponent >= 0:
            return len(digits) + exponent if digits != (0,) else 0, 0
        scale = -exponent
        integer_digits = max(len(digits) - scale, 0)
        return integer_digits, scale

    @classmethod
    def check_precision(cls, value: Decimal, precision: Optional[int],
                        scale: Optional[int]) -> Optional[str]:
        """
        Check a value fits NUMERIC(precision, scale).

        Returns None when it fits, otherwise "scale" or "precision" naming
        which bound was exceeded.
        """
        integer_digits, value_scale = cls.digits_and_scale(value)
        if scale is not None and value_scale > scale:
            return "scale"
        if precision is not None:
            max_integer_digits = precision - (scale or 0)
            if integer_digits > max_integer_digits:
                return "precision"
        return None

    @classmethod
    def quantize_to_scale(cls, amount: Numeric, scale: Optional[int]) -> Decimal:
        """Quantize to the given number of fractional digits"""
        decimal_amount = cls.to_decimal(amount, "quantize")
        if scale is None:
            return decimal_amount
        return decimal_amount.quantize(Decimal(1).scaleb(-scale), rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_usd(cls, amount: Numeric) -> Decimal:
        """Quantize amount to fiat precision (2 decimal places)"""
        return cls.to_decimal(amount, "USD").quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_crypto(cls, amount: Numeric) -> Decimal:
        """Quantize amount to crypto precision (8 decimal places)"""
        return cls.to_decimal(amount, "crypto").quantize(cls.CRYPTO_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def add_precise(cls, *amounts: Numeric) -> Decimal:
        """Add multiple amounts with fiat precision"""
        total = Decimal("0")
        for amount in amounts:
            total += cls.to_decimal(amount, "addition")
        return cls.quantize_usd(total)

    @classmethod
    def subtract_precise(cls, minuend: Numeric, subtrahend: Numeric) -> Decimal:
        """Subtract with fiat precision"""
        result = cls.to_decimal(minuend, "subtraction_minuend") - cls.to_decimal(
            subtrahend, "subtraction_subtrahend"
        )
        return cls.quantize_usd(result)

    @classmethod
    def validate_positive(cls, amount: Numeric, context: str = "amount") -> Decimal:
        """Validate that amount is positive and return as Decimal"""
        amount_decimal = cls.to_decimal(amount, context)

        if amount_decimal <= 0:
            raise ValueError(
                f"Amount must be positive in context {context}: {amount_decimal}"
            )

        return amount_decimal

    @classmethod
    def to_minor_units(cls, amount: Numeric, currency: str) -> int:
        """Convert a fiat amount to the integer minor units payment processors bill in"""
        amount_decimal = cls.validate_positive(amount, "payment_amount")
        if currency.upper() in cls.ZERO_DECIMAL_CURRENCIES:
            return int(amount_decimal.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return int((cls.quantize_usd(amount_decimal) * 100).to_integral_value())

    @classmethod
    def format_usd(cls, amount: Numeric) -> str:
        """Format amount as USD string with proper precision"""
        return f"${cls.quantize_usd(amount):,.2f}"

    @classmethod
    def format_crypto(cls, amount: Numeric, currency: str) -> str:
        """Format amount as crypto string with proper precision"""
        formatted = f"{cls.quantize_crypto(amount):f}".rstrip("0").rstrip(".")
        return f"{formatted or '0'} {currency}"
