from dataclasses import dataclass, field
from typing import Iterable

from models import TransactionType


@dataclass(frozen=True)
class LedgerEntry:
    category_id: int
    category_name: str
    amount_cents: int
    type: TransactionType


@dataclass
class CategoryAggregate:
    category_id: int
    category_name: str
    income_cents: int = 0
    expense_cents: int = 0
    transaction_count: int = 0

    @property
    def balance_cents(self) -> int:
        return self.income_cents - self.expense_cents


@dataclass
class Aggregation:
    categories: list[CategoryAggregate] = field(default_factory=list)
    total_income_cents: int = 0
    total_expense_cents: int = 0

    @property
    def balance_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents


def aggregate(entries: Iterable[LedgerEntry]) -> Aggregation:
    """Group entries by category and sum income and expenses.

    Categories are returned sorted by name (case-insensitive), then id.
    """
    by_category: dict[int, CategoryAggregate] = {}
    total_income = 0
    total_expense = 0

    for entry in entries:
        agg = by_category.get(entry.category_id)
        if agg is None:
            agg = CategoryAggregate(
                category_id=entry.category_id, category_name=entry.category_name
            )
            by_category[entry.category_id] = agg
        agg.transaction_count += 1
        if entry.type == TransactionType.income:
            agg.income_cents += entry.amount_cents
            total_income += entry.amount_cents
        else:
            agg.expense_cents += entry.amount_cents
            total_expense += entry.amount_cents

    categories = sorted(
        by_category.values(),
        key=lambda c: (c.category_name.lower(), c.category_id),
    )
    return Aggregation(
        categories=categories,
        total_income_cents=total_income,
        total_expense_cents=total_expense,
    )
