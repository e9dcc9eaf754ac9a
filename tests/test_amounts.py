from decimal import Decimal

import pytest

from avr.errors import ValidationError
from avr.services.amounts import Absent, RawNumber, RawString, first_present, parse_amount, raw_amount


@pytest.mark.parametrize(
    "value, expected",
    [
        ("25", Decimal("25.00")),
        ("$25.00", Decimal("25.00")),
        ("$1,250.50", Decimal("1250.50")),
        (" 10 ", Decimal("10.00")),
        (42, Decimal("42.00")),
        (19.999, Decimal("20.00")),
        (Decimal("7.5"), Decimal("7.50")),
    ],
)
def test_parse_amount_normalizes(value, expected):
    assert parse_amount(raw_amount(value)) == expected


@pytest.mark.parametrize("value", ["0", "-5", "$0.00", "0.001", -1, 0])
def test_non_positive_amounts_rejected(value):
    with pytest.raises(ValidationError) as exc:
        parse_amount(raw_amount(value))
    assert exc.value.errors == {"amount": ["Donation amount must be greater than zero"]}


@pytest.mark.parametrize("value", ["abc", "12.3.4", "NaN", "Infinity", True])
def test_unparsable_amounts_rejected(value):
    with pytest.raises(ValidationError) as exc:
        parse_amount(raw_amount(value))
    assert exc.value.errors == {"amount": ["Please enter a valid donation amount"]}


@pytest.mark.parametrize("value", [None, "", "   ", "$", ","])
def test_missing_amount_is_required(value):
    with pytest.raises(ValidationError) as exc:
        parse_amount(raw_amount(value))
    assert exc.value.errors == {"amount": ["Donation amount is required"]}


def test_raw_amount_tags():
    assert raw_amount(None) == Absent()
    assert raw_amount("  ") == Absent()
    assert raw_amount("$5") == RawString("$5")
    assert raw_amount(5) == RawNumber(Decimal("5"))


def test_first_present_priority():
    assert first_present("", None, "$30") == RawString("$30")
    assert first_present("50", "30") == RawString("50")
    assert first_present(None, "") == Absent()
