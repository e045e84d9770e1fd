from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from aggregation import Aggregation, LedgerEntry, aggregate
from config import Settings
from models import (
    SYSTEM_CATEGORY_KEY,
    SYSTEM_CATEGORY_NAME,
    Category,
    Profile,
    Transaction,
    TransactionType,
)
from money import format_amount
from openrouter import ChatOptions, OpenRouterClient, OpenRouterConfig
from periods import MonthRange, load_zone, resolve_month
from schemas import (
    AIAnalysisOut,
    CategoryIn,
    CategorySummaryOut,
    MonthlySummaryOut,
    PaginationOut,
    TransactionIn,
    TransactionOut,
    TransactionsListOut,
    TransactionUpdateIn,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"
ANALYSIS_TRANSACTION_LIMIT = 1000


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class SystemCategoryError(ValueError):
    pass


class PersistenceError(RuntimeError):
    pass


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ProfileService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Optional[Profile]:
        try:
            return self.session.get(Profile, self.user_id)
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load profile") from exc

    def get_timezone(self) -> Optional[str]:
        profile = self.get()
        return profile.timezone if profile else None

    def update_timezone(self, tz_name: str) -> Profile:
        load_zone(tz_name)
        profile = self.get()
        if profile is None:
            profile = Profile(user_id=self.user_id, timezone=tz_name)
            self.session.add(profile)
        else:
            profile.timezone = tz_name
        self.session.commit()
        self.session.refresh(profile)
        return profile


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(func.lower(Category.name), Category.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        # reserved for the system category, which may not exist yet
        if name.lower() == SYSTEM_CATEGORY_NAME.lower():
            return True
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        if self._name_taken(data.name):
            raise ConflictError("Category with this name already exists")
        category = Category(user_id=self.user_id, name=data.name, is_system=False)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        if category.is_system:
            raise SystemCategoryError("Cannot modify system category")
        if self._name_taken(data.name, exclude_id=category.id):
            raise ConflictError("Category with this name already exists")
        category.name = data.name
        self.session.commit()
        self.session.refresh(category)
        return category

    def system_category(self) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.system_key == SYSTEM_CATEGORY_KEY,
            )
        )
        if category:
            return category
        category = Category(
            user_id=self.user_id,
            name=SYSTEM_CATEGORY_NAME,
            is_system=True,
            system_key=SYSTEM_CATEGORY_KEY,
        )
        self.session.add(category)
        self.session.flush()
        return category

    def delete(self, category_id: int) -> int:
        """Delete a category, moving its transactions to the system category.

        Returns the number of transactions moved.
        """
        category = self.get(category_id)
        if category.is_system:
            raise SystemCategoryError("Cannot delete system category")

        fallback = self.system_category()
        result = self.session.execute(
            update(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category.id,
            )
            .values(category_id=fallback.id)
            .execution_options(synchronize_session="fetch")
        )
        moved = int(result.rowcount or 0)
        self.session.execute(
            delete(Category).where(
                Category.user_id == self.user_id, Category.id == category.id
            )
        )
        self.session.commit()
        logger.info(
            f"category_deleted: category_id={category_id} transactions_moved={moved}"
        )
        return moved


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _require_category(self, category_id: int) -> Category:
        return CategoryService(self.session, self.user_id).get(category_id)

    def create(self, data: TransactionIn) -> Transaction:
        self._require_category(data.category_id)
        occurred_at = to_utc_naive(data.occurred_at) if data.occurred_at else utcnow()
        txn = Transaction(
            user_id=self.user_id,
            occurred_at=occurred_at,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            description=data.description,
        )
        self.session.add(txn)
        self.session.commit()
        return self.get(txn.id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        txn = self.get(transaction_id)
        if data.category_id is not None:
            self._require_category(data.category_id)
            txn.category_id = data.category_id
        if data.amount_cents is not None:
            txn.amount_cents = data.amount_cents
        if data.type is not None:
            txn.type = data.type
        if data.description is not None:
            txn.description = data.description
        if data.occurred_at is not None:
            txn.occurred_at = to_utc_naive(data.occurred_at)
        self.session.commit()
        self.session.expire(txn)
        return self.get(transaction_id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()

    def _in_range(self, month_range: MonthRange):
        return (
            Transaction.user_id == self.user_id,
            Transaction.occurred_at >= month_range.naive_start,
            Transaction.occurred_at < month_range.naive_end,
        )

    def list_for_month(
        self,
        month_range: MonthRange,
        category_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        conditions = list(self._in_range(month_range))
        if category_id is not None:
            conditions.append(Transaction.category_id == category_id)

        total = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(*conditions)
            ).scalar_one()
            or 0
        )
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(*conditions)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).all(), total

    def ledger_entries(self, month_range: MonthRange) -> list[LedgerEntry]:
        stmt = (
            select(
                Transaction.category_id,
                Category.name,
                Transaction.amount_cents,
                Transaction.type,
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(*self._in_range(month_range))
        )
        try:
            rows = self.session.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load transactions") from exc
        return [
            LedgerEntry(
                category_id=row[0],
                category_name=row[1],
                amount_cents=row[2],
                type=row[3],
            )
            for row in rows
        ]

    @staticmethod
    def to_out(txn: Transaction) -> TransactionOut:
        return TransactionOut(
            id=txn.id,
            amount=format_amount(txn.amount_cents),
            type=txn.type,
            category_id=txn.category_id,
            category_name=txn.category.name,
            description=txn.description,
            occurred_at=as_utc(txn.occurred_at),
            created_at=as_utc(txn.created_at),
            updated_at=as_utc(txn.updated_at),
        )

    def page_for_month(
        self,
        month_range: MonthRange,
        category_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> TransactionsListOut:
        items, total = self.list_for_month(
            month_range, category_id=category_id, limit=limit, offset=offset
        )
        return TransactionsListOut(
            transactions=[self.to_out(txn) for txn in items],
            pagination=PaginationOut(
                total=total,
                limit=limit,
                offset=offset,
                has_more=offset + len(items) < total,
            ),
        )


def user_month_range(session: Session, user_id: str, month: Optional[str]) -> MonthRange:
    tz_name = ProfileService(session, user_id).get_timezone() or DEFAULT_TIMEZONE
    return resolve_month(month, tz_name)


class SummaryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def monthly_summary(self, month: Optional[str] = None) -> MonthlySummaryOut:
        month_range = user_month_range(self.session, self.user_id, month)
        entries = TransactionService(self.session, self.user_id).ledger_entries(
            month_range
        )
        result = aggregate(entries)
        logger.info(
            f"monthly_summary: month={month_range.label} "
            f"transactions={len(entries)} categories={len(result.categories)}"
        )
        return summary_from_aggregation(month_range.label, result)


def summary_from_aggregation(label: str, result: Aggregation) -> MonthlySummaryOut:
    return MonthlySummaryOut(
        month=label,
        total_income=format_amount(result.total_income_cents),
        total_expenses=format_amount(result.total_expense_cents),
        balance=format_amount(result.balance_cents),
        categories=[
            CategorySummaryOut(
                category_id=c.category_id,
                category_name=c.category_name,
                income=format_amount(c.income_cents),
                expenses=format_amount(c.expense_cents),
                balance=format_amount(c.balance_cents),
                transaction_count=c.transaction_count,
            )
            for c in result.categories
        ],
    )


ANALYSIS_SYSTEM_PROMPT = """You are a helpful personal finance assistant. You analyse the user's \
income and expenses and give practical advice. Your answer should contain:
1. A short summary of the month's finances
2. The categories with the largest expenses
3. Practical tips on saving and investing
4. An overall assessment of the user's financial health

Format the answer as markdown. Be concise but helpful."""


def format_transactions_for_prompt(transactions: list[Transaction], month: str) -> str:
    if not transactions:
        return f"No transactions in {month}."

    result = aggregate(
        LedgerEntry(
            category_id=txn.category_id,
            category_name=txn.category.name,
            amount_cents=txn.amount_cents,
            type=txn.type,
        )
        for txn in transactions
    )

    lines = [
        f"Month: {month}",
        f"Number of transactions: {len(transactions)}",
        f"Total income: {format_amount(result.total_income_cents)}",
        f"Total expenses: {format_amount(result.total_expense_cents)}",
        f"Balance: {format_amount(result.balance_cents)}",
        "",
    ]

    incomes = [c for c in result.categories if c.income_cents]
    if incomes:
        lines.append("Income by category:")
        lines.extend(f"- {c.category_name}: {format_amount(c.income_cents)}" for c in incomes)
        lines.append("")

    expenses = [c for c in result.categories if c.expense_cents]
    if expenses:
        lines.append("Expenses by category:")
        lines.extend(
            f"- {c.category_name}: {format_amount(c.expense_cents)}" for c in expenses
        )
        lines.append("")

    lines.append("Transactions:")
    for txn in transactions:
        sign = "+" if txn.type == TransactionType.income else "-"
        lines.append(
            f"{sign}{format_amount(txn.amount_cents)} | {txn.category.name} | "
            f"{txn.description} | {txn.occurred_at.date().isoformat()}"
        )
    return "\n".join(lines) + "\n"


def openrouter_client_from_settings(settings: Settings) -> OpenRouterClient:
    return OpenRouterClient(
        OpenRouterConfig(
            api_key=settings.openrouter_api_key or "",
            default_model=settings.openrouter_model,
            default_temperature=0.7,
            default_max_tokens=1024,
            site_url=settings.openrouter_site_url,
            site_name=settings.openrouter_site_name,
            timeout_secs=settings.openrouter_timeout_secs,
        )
    )


class AnalysisService:
    def __init__(self, session: Session, user_id: str, client: OpenRouterClient) -> None:
        self.session = session
        self.user_id = user_id
        self.client = client

    def analyze(self, month: Optional[str] = None) -> AIAnalysisOut:
        month_range = user_month_range(self.session, self.user_id, month)
        transactions, _total = TransactionService(
            self.session, self.user_id
        ).list_for_month(month_range, limit=ANALYSIS_TRANSACTION_LIMIT)
        prompt = format_transactions_for_prompt(transactions, month_range.label)
        options = ChatOptions.model_validate(
            {
                "messages": [
                    {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": f"Analyse my finances for this month:\n\n{prompt}",
                    },
                ]
            }
        )
        response = self.client.chat(options)
        logger.info(
            f"ai_analysis: month={month_range.label} transactions={len(transactions)} "
            f"finish_reason={response.finish_reason}"
        )
        return AIAnalysisOut(analysis=response.content, month=month_range.label)
