import re
from decimal import Decimal

import pytest

from money import format_amount, parse_amount


@pytest.mark.parametrize(
    "value, expected",
    [
        ("200.50", 20050),
        (150.25, 15025),
        (1000, 100000),
        ("0.01", 1),
        (" 12,5 ", 1250),
        (Decimal("0.015"), 2),
        ("1000000.00", 100_000_000),
    ],
)
def test_parse_amount(value, expected) -> None:
    assert parse_amount(value) == expected


@pytest.mark.parametrize("value", ["abc", "", "0", "0.004", "-5", "1000000.01", "NaN"])
def test_parse_amount_rejects_invalid(value) -> None:
    with pytest.raises(ValueError):
        parse_amount(value)


def test_format_amount_has_two_decimals() -> None:
    for cents in (0, 1, 10, 35075, -35075, 100000, -1):
        assert re.match(r"^-?\d+\.\d{2}$", format_amount(cents))
    assert format_amount(-35075) == "-350.75"
    assert format_amount(5) == "0.05"
