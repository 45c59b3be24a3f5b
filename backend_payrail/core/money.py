"""
Decimal money helpers: parsing, fee policy, base-unit conversion, tolerance.

Amounts are decimal.Decimal quantized to 6 places (USDC/USDT precision).
"""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from backend_payrail.core.exceptions import InvalidAmount

SUPPORTED_CURRENCIES = ("USDC", "USDT")

AMOUNT_QUANTUM = Decimal("0.000001")

PAYOUT_FEE_RATE = Decimal("0.005")
PAYOUT_FEE_FLOOR = Decimal("1.0")
PAYOUT_MINIMUM = Decimal("10")
PAYOUT_APPROVAL_THRESHOLD = Decimal("1000")

# Accept on-chain amounts within +/- 1% of the expected amount
TRANSFER_TOLERANCE = Decimal("0.01")


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Parse a user supplied amount; reject NaN, infinities and garbage."""
    if isinstance(value, bool):
        raise InvalidAmount(f"{field_name} must be a number", field=field_name)
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError) as e:
        raise InvalidAmount(f"{field_name} must be a number", field=field_name, value=str(value)) from e
    if not dec.is_finite():
        raise InvalidAmount(f"{field_name} must be finite", field=field_name, value=str(value))
    return quantize(dec)


def quantize(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def payout_fee(amount: Decimal) -> Decimal:
    """fee = max(amount * 0.5%, 1.0)."""
    return quantize(max(amount * PAYOUT_FEE_RATE, PAYOUT_FEE_FLOOR))


def requires_approval(amount: Decimal) -> bool:
    return amount > PAYOUT_APPROVAL_THRESHOLD


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Whole token units -> integer base units, rounding down."""
    scaled = (amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    return int(scaled)


def from_base_units(raw_amount: int, decimals: int) -> Decimal:
    return quantize(Decimal(raw_amount) / (Decimal(10) ** decimals))


def within_tolerance(raw_amount: int, expected_amount: Decimal, decimals: int) -> bool:
    """True when raw_amount lies in [expected*(1-tol), expected*(1+tol)] base units."""
    expected = expected_amount * (Decimal(10) ** decimals)
    low = expected * (Decimal(1) - TRANSFER_TOLERANCE)
    high = expected * (Decimal(1) + TRANSFER_TOLERANCE)
    return low <= Decimal(raw_amount) <= high


def format_amount(value: Decimal | None) -> str | None:
    """Serialize for JSON payloads without exponent notation or trailing zeros."""
    if value is None:
        return None
    normalized = quantize(Decimal(value)).normalize()
    return format(normalized, "f")
