from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    BUDGET_CATEGORIES,
    Category,
    GoalCategory,
    GoalStatus,
    TransactionSource,
    TransactionType,
)


class TransactionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(..., alias="userId", min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    type: TransactionType
    category: Category
    description: str = Field(..., min_length=1, max_length=200)
    occurred_at: Optional[datetime] = Field(default=None, alias="date")
    source: TransactionSource = TransactionSource.manual

    @field_validator("description")
    @classmethod
    def _strip_description(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Description cannot be empty")
        return value


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2
    )
    type: Optional[TransactionType] = None
    category: Optional[Category] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    occurred_at: Optional[datetime] = Field(default=None, alias="date")


class BudgetIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(..., alias="userId", min_length=1, max_length=64)
    limits: dict[Category, Decimal] = Field(default_factory=dict)

    @field_validator("limits")
    @classmethod
    def _check_limits(cls, value: dict[Category, Decimal]) -> dict[Category, Decimal]:
        for category, amount in value.items():
            if category not in BUDGET_CATEGORIES:
                raise ValueError(f"Category '{category.value}' cannot carry a budget")
            if amount < 0:
                raise ValueError("Budget limits cannot be negative")
        return value


class GoalIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(..., alias="userId", min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    target_amount: Decimal = Field(
        ..., alias="targetAmount", gt=0, max_digits=12, decimal_places=2
    )
    deadline: Optional[date] = None
    category: GoalCategory = GoalCategory.general


class GoalUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    target_amount: Optional[Decimal] = Field(
        default=None, alias="targetAmount", gt=0, max_digits=12, decimal_places=2
    )
    deadline: Optional[date] = None
    category: Optional[GoalCategory] = None
    status: Optional[GoalStatus] = None


class GoalProgressIn(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class ExtractedTransaction(BaseModel):
    """Transaction fields as returned by the language model."""

    model_config = ConfigDict(extra="ignore")

    amount: Decimal = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1, max_length=50)
    type: TransactionType


class ExtractedReceipt(ExtractedTransaction):
    type: TransactionType = TransactionType.expense
    merchant: Optional[str] = Field(default=None, max_length=120)
    items: list[str] = Field(default_factory=list)


class GoalDraft(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    target_amount: Decimal = Field(..., alias="targetAmount", gt=0)
    deadline: Optional[date] = None
    category: str = "general"
