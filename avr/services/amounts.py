# avr/services/amounts.py
"""
Donation amount parsing boundary.

Amounts reach us as a form string ("$1,250.00"), a JSON number, or not at
all (recovered from the session). They are wrapped in one of three tagged
types and normalized to a positive two-place Decimal before anything else
sees them.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Union

from avr.errors import ValidationError

CENTS = Decimal("0.01")
_STRIP_CHARS = ("$", ",", " ")


@dataclass(frozen=True)
class RawString:
    value: str


@dataclass(frozen=True)
class RawNumber:
    value: Decimal


@dataclass(frozen=True)
class Absent:
    pass


RawAmount = Union[RawString, RawNumber, Absent]


def raw_amount(value: Any) -> RawAmount:
    """Tag an untyped request value."""
    if value is None:
        return Absent()
    if isinstance(value, bool):
        # JSON true/false is never an amount
        return RawString(str(value))
    if isinstance(value, (int, float, Decimal)):
        return RawNumber(Decimal(str(value)))
    s = str(value).strip()
    return RawString(s) if s else Absent()


def first_present(*values: Any) -> RawAmount:
    """First non-absent candidate, in priority order."""
    for v in values:
        raw = raw_amount(v)
        if not isinstance(raw, Absent):
            return raw
    return Absent()


def parse_amount(raw: RawAmount, *, field: str = "amount") -> Decimal:
    """Normalize to a positive Decimal quantized to cents or raise ValidationError."""
    if isinstance(raw, Absent):
        raise ValidationError.single(field, "Donation amount is required")

    if isinstance(raw, RawNumber):
        value = raw.value
    else:
        cleaned = raw.value
        for ch in _STRIP_CHARS:
            cleaned = cleaned.replace(ch, "")
        if not cleaned:
            raise ValidationError.single(field, "Donation amount is required")
        try:
            value = Decimal(cleaned)
        except InvalidOperation:
            raise ValidationError.single(field, "Please enter a valid donation amount") from None

    if not value.is_finite():
        raise ValidationError.single(field, "Please enter a valid donation amount")

    try:
        value = value.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError.single(field, "Please enter a valid donation amount") from None
    if value <= 0:
        raise ValidationError.single(field, "Donation amount must be greater than zero")
    return value
