#!/usr/bin/env python3
"""
Amount Normalization Between Gateway Units and the Ledger Unit

The ledger stores every amount as an integer number of kobo. Gateways speak
either kobo (minor unit) or naira (major unit). These two functions are the only
place a unit conversion may happen.
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Union

from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[int, str, Decimal, float]


class AmountUnit(Enum):
    """Native unit a gateway reports amounts in"""
    MINOR = "minor"  # kobo
    MAJOR = "major"  # naira


class AmountNormalizer:
    """Round-half-up conversion between native gateway units and canonical kobo"""

    MINOR_PER_MAJOR = 100
    MAJOR_PRECISION = Decimal("0.01")
    MINOR_PRECISION = Decimal("1")

    @classmethod
    def to_decimal(cls, value: Numeric) -> Decimal:
        """Convert a numeric value to Decimal, rejecting anything that is not a finite number"""
        if isinstance(value, bool) or value is None:
            raise ValidationError(f"Invalid amount: {value!r}")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert via str to avoid float binary artefacts (1.1 -> 1.1000000000000000888)
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                raise ValidationError(f"Invalid amount: {value!r}") from e

        if not decimal_value.is_finite():
            raise ValidationError(f"Invalid amount: {value!r}")
        return decimal_value

    @classmethod
    def to_canonical(cls, amount: Numeric, unit: AmountUnit) -> int:
        """Convert a native gateway amount to canonical kobo"""
        value = cls.to_decimal(amount)
        if unit is AmountUnit.MAJOR:
            value = value * cls.MINOR_PER_MAJOR
        elif unit is not AmountUnit.MINOR:
            raise ValidationError(f"Unknown amount unit: {unit!r}")

        canonical = int(value.quantize(cls.MINOR_PRECISION, rounding=ROUND_HALF_UP))
        if Decimal(canonical) != value:
            logger.debug(f"🔢 AMOUNT_ROUNDED: {amount} {unit.value} -> {canonical} kobo")
        return canonical

    @classmethod
    def from_canonical(cls, amount: int, unit: AmountUnit) -> Union[int, Decimal]:
        """Convert canonical kobo to a gateway's native unit (int kobo or 2dp naira)"""
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(f"Canonical amounts are integer kobo, got {amount!r}")

        if unit is AmountUnit.MINOR:
            return amount
        if unit is AmountUnit.MAJOR:
            return (Decimal(amount) / cls.MINOR_PER_MAJOR).quantize(
                cls.MAJOR_PRECISION, rounding=ROUND_HALF_UP
            )
        raise ValidationError(f"Unknown amount unit: {unit!r}")


def to_canonical(amount: Numeric, unit: AmountUnit) -> int:
    return AmountNormalizer.to_canonical(amount, unit)


def from_canonical(amount: int, unit: AmountUnit) -> Union[int, Decimal]:
    return AmountNormalizer.from_canonical(amount, unit)


def format_naira(amount_kobo: int) -> str:
    """Human-readable amount for log lines, e.g. 150050 -> '₦1,500.50'"""
    naira = AmountNormalizer.from_canonical(amount_kobo, AmountUnit.MAJOR)
    return f"₦{naira:,.2f}"
