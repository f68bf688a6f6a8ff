from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class Category(str, Enum):
    food = "food"
    transport = "transport"
    shopping = "shopping"
    bills = "bills"
    entertainment = "entertainment"
    health = "health"
    general = "general"
    salary = "salary"


# Onboarding order; salary is income-only and never budgeted.
BUDGET_CATEGORIES: tuple[Category, ...] = (
    Category.food,
    Category.transport,
    Category.shopping,
    Category.bills,
    Category.entertainment,
    Category.health,
    Category.general,
)


class TransactionSource(str, Enum):
    web_chat = "web_chat"
    web_chat_receipt = "web_chat_receipt"
    cloud_chat = "cloud_chat"
    cloud_chat_receipt = "cloud_chat_receipt"
    api = "api"
    manual = "manual"


class GoalCategory(str, Enum):
    trip = "trip"
    purchase = "purchase"
    emergency = "emergency"
    investment = "investment"
    general = "general"


class GoalStatus(str, Enum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[Category] = mapped_column(SAEnum(Category), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    source: Mapped[TransactionSource] = mapped_column(
        SAEnum(TransactionSource), nullable=False, default=TransactionSource.manual
    )

    __table_args__ = (
        Index("ix_transactions_owner_occurred", "owner_id", "occurred_at"),
        Index(
            "ix_transactions_owner_type_category",
            "owner_id",
            "type",
            "category",
            "occurred_at",
        ),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    setup_completed: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    setup_step: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    limits: Mapped[list["BudgetLimit"]] = relationship(
        "BudgetLimit",
        back_populates="budget",
        cascade="all, delete-orphan",
        order_by="BudgetLimit.id",
    )

    __table_args__ = (
        CheckConstraint(
            "setup_step >= 0 AND setup_step <= 7", name="ck_budget_setup_step_range"
        ),
    )

    def limit_for(self, category: Category) -> int:
        for row in self.limits:
            if row.category == category:
                return row.limit_cents
        return 0

    def set_limit(self, category: Category, limit_cents: int) -> None:
        for row in self.limits:
            if row.category == category:
                row.limit_cents = limit_cents
                return
        self.limits.append(BudgetLimit(category=category, limit_cents=limit_cents))

    def total_cents(self) -> int:
        return sum(row.limit_cents for row in self.limits)


class BudgetLimit(Base):
    __tablename__ = "budget_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[Category] = mapped_column(SAEnum(Category), nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="limits")

    __table_args__ = (
        UniqueConstraint("budget_id", "category", name="uq_budget_limit_category"),
        CheckConstraint("limit_cents >= 0", name="ck_budget_limit_non_negative"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    target_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deadline: Mapped[Optional[date]] = mapped_column(Date)
    category: Mapped[GoalCategory] = mapped_column(
        SAEnum(GoalCategory), nullable=False, default=GoalCategory.general
    )
    status: Mapped[GoalStatus] = mapped_column(
        SAEnum(GoalStatus), nullable=False, default=GoalStatus.active
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    weekly_target_cents: Mapped[Optional[int]] = mapped_column(Integer)
    monthly_target_cents: Mapped[Optional[int]] = mapped_column(Integer)
    progress_percentage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    __table_args__ = (
        Index("ix_goals_owner_status", "owner_id", "status"),
        CheckConstraint("target_cents > 0", name="ck_goals_target_positive"),
        CheckConstraint("current_cents >= 0", name="ck_goals_current_non_negative"),
    )
