from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

MIN_AMOUNT_CENTS = 1
MAX_AMOUNT_CENTS = 100_000_000


def parse_amount(value: Union[str, int, float, Decimal]) -> int:
    """Convert a decimal amount given as string or number to integer cents."""
    clean = str(value).strip().replace(" ", "").replace(",", ".")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents < MIN_AMOUNT_CENTS or cents > MAX_AMOUNT_CENTS:
        raise ValueError("Amount must be between 0.01 and 1,000,000.00")
    return cents


def format_amount(cents: int) -> str:
    value = (Decimal(cents) / Decimal(100)).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )
    return f"{value:.2f}"
