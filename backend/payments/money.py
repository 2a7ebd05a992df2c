"""
Monetary precision helpers.

All order, discount and till arithmetic goes through these functions so every
amount is a Decimal rounded to the configured currency's minor unit.

Key Principles:
1. NEVER use float for money
2. Quantize once per derived amount, with ROUND_HALF_EVEN
3. Clamp, never go negative
"""

from decimal import Decimal, ROUND_HALF_EVEN
from typing import Optional, Union

from core_backend.config import engine_settings

ZERO = Decimal("0")

# Currency minor unit exponents (how many decimal places)
CURRENCY_EXPONENT = {
    "USD": 2,  # United States Dollar (cents)
    "EUR": 2,  # Euro (cents)
    "GBP": 2,  # British Pound (pence)
    "AUD": 2,  # Australian Dollar (cents)
    "SGD": 2,  # Singapore Dollar (cents)
    "THB": 2,  # Thai Baht (satang)

    # Zero-decimal currencies
    "JPY": 0,  # Japanese Yen (no subunit)
    "KRW": 0,  # South Korean Won (no subunit)
    "VND": 0,  # Vietnamese Dong (no subunit)
}

Amount = Union[Decimal, str, int, float]


def currency_exponent(currency: str) -> int:
    """
    Get the number of decimal places for a currency.

    Examples:
        >>> currency_exponent("USD")
        2
        >>> currency_exponent("VND")
        0
    """
    return CURRENCY_EXPONENT.get(currency.upper(), 2)


def quantize_decimal(currency: str) -> Decimal:
    return Decimal(10) ** -currency_exponent(currency)


def quantize(currency: str, amount: Amount) -> Decimal:
    """
    Round to currency decimals using banker's rounding (ROUND_HALF_EVEN).

    Examples:
        >>> quantize("USD", "10.125")
        Decimal('10.12')
        >>> quantize("VND", "1234.5")
        Decimal('1234')
    """
    if isinstance(amount, float):
        # Convert float to string first to avoid precision issues
        amount = str(amount)
    return Decimal(amount).quantize(quantize_decimal(currency), rounding=ROUND_HALF_EVEN)


def money(amount: Amount, currency: Optional[str] = None) -> Decimal:
    """Quantize ``amount`` in the engine's configured currency."""
    return quantize(currency or engine_settings.CURRENCY, amount)


def percent_of(amount: Amount, percentage: Amount, currency: Optional[str] = None) -> Decimal:
    """
    ``percentage`` percent of ``amount``, quantized.

    Examples:
        >>> percent_of("100000", "15", "VND")
        Decimal('15000')
    """
    result = Decimal(str(amount)) * (Decimal(str(percentage)) / Decimal("100"))
    return money(result, currency)


def clamp(amount: Decimal, upper: Decimal) -> Decimal:
    """Clamp ``amount`` into ``[0, upper]``."""
    return max(ZERO, min(amount, max(ZERO, upper)))
