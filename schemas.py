from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import TransactionType
from money import parse_amount
from periods import MONTH_PATTERN

AmountInput = Union[str, int, float]


def _clean_name(value: str) -> str:
    if not value.strip():
        raise ValueError("Name cannot be empty or whitespace-only")
    if value != value.strip():
        raise ValueError("Name must not have leading or trailing spaces")
    return value


def _clean_description(value: str) -> str:
    if not value.strip():
        raise ValueError("Description cannot be whitespace-only")
    return value


class ErrorDetail(BaseModel):
    field: str
    message: str


class ProfileUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timezone: str = Field(..., min_length=1, max_length=64)


class ProfileOut(BaseModel):
    user_id: str
    timezone: str
    created_at: datetime
    updated_at: datetime


class CategoryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=40)

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        return _clean_name(value)


class CategoryOut(BaseModel):
    id: int
    name: str
    is_system: bool
    system_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CategoriesListOut(BaseModel):
    categories: list[CategoryOut]


class CategoryDeleteOut(BaseModel):
    message: str
    transactions_moved: int


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: int = Field(..., validation_alias="amount")
    type: TransactionType
    category_id: int
    description: str = Field(..., min_length=1, max_length=255)
    occurred_at: Optional[datetime] = None

    @field_validator("amount_cents", mode="before")
    @classmethod
    def parse_amount_value(cls, value: AmountInput) -> int:
        return parse_amount(value)

    @field_validator("description")
    @classmethod
    def check_description(cls, value: str) -> str:
        return _clean_description(value)


class TransactionUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, validation_alias="amount")
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    occurred_at: Optional[datetime] = None

    @field_validator("amount_cents", mode="before")
    @classmethod
    def parse_amount_value(cls, value: Optional[AmountInput]) -> Optional[int]:
        if value is None:
            return None
        return parse_amount(value)

    @field_validator("description")
    @classmethod
    def check_description(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _clean_description(value)


class TransactionOut(BaseModel):
    id: int
    amount: str
    type: TransactionType
    category_id: int
    category_name: str
    description: str
    occurred_at: datetime
    created_at: datetime
    updated_at: datetime


class PaginationOut(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class TransactionsListOut(BaseModel):
    transactions: list[TransactionOut]
    pagination: PaginationOut


class TransactionsQuery(BaseModel):
    month: Optional[str] = Field(default=None, pattern=MONTH_PATTERN)
    category_id: Optional[int] = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class DeleteOut(BaseModel):
    message: str


class SummaryQuery(BaseModel):
    month: Optional[str] = Field(default=None, pattern=MONTH_PATTERN)


class CategorySummaryOut(BaseModel):
    category_id: int
    category_name: str
    income: str
    expenses: str
    balance: str
    transaction_count: int


class MonthlySummaryOut(BaseModel):
    month: str
    total_income: str
    total_expenses: str
    balance: str
    categories: list[CategorySummaryOut]


class AIAnalysisOut(BaseModel):
    analysis: str
    month: str
