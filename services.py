from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from pydantic import ValidationError
from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from models import (
    BUDGET_CATEGORIES,
    Budget,
    Category,
    Goal,
    GoalCategory,
    GoalStatus,
    Transaction,
    TransactionSource,
    TransactionType,
)
from periods import (
    Window,
    local_now,
    local_today,
    month_window,
    previous_month_window,
    resolve_window,
)
from schemas import (
    BudgetIn,
    ExtractedTransaction,
    GoalDraft,
    GoalIn,
    GoalUpdate,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class GoalNotActive(ValueError):
    pass


def to_cents(amount: Decimal | int | float) -> int:
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_units(cents: int) -> float:
    return cents / 100


def percentage(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    value = Decimal(part) * 100 / Decimal(whole)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def _ceil_units_per(remaining_cents: int, periods: int) -> int:
    """Split cents over periods, rounding each share up to a whole unit."""
    return _ceil_div(remaining_cents, periods * 100) * 100


# Labels the model may answer with besides the canonical names.
CATEGORY_ALIASES: dict[str, Category] = {
    "אוכל": Category.food,
    "תחבורה": Category.transport,
    "קניות": Category.shopping,
    "חשבונות": Category.bills,
    "בילויים": Category.entertainment,
    "בריאות": Category.health,
    "כללי": Category.general,
    "משכורת": Category.salary,
    "groceries": Category.food,
    "restaurant": Category.food,
    "fuel": Category.transport,
    "rent": Category.bills,
    "income": Category.salary,
}

GOAL_CATEGORY_ALIASES: dict[str, GoalCategory] = {
    "טיול": GoalCategory.trip,
    "רכישה": GoalCategory.purchase,
    "חירום": GoalCategory.emergency,
    "השקעה": GoalCategory.investment,
    "כללי": GoalCategory.general,
    "travel": GoalCategory.trip,
    "vacation": GoalCategory.trip,
}


def resolve_category(label: Optional[str]) -> Optional[Category]:
    """Map a free-form label onto the closed category set.

    Exact and alias matches win; otherwise a single canonical name within one
    edit is accepted. Anything else is unresolved.
    """
    clean = (label or "").strip().lower()
    if not clean:
        return None
    try:
        return Category(clean)
    except ValueError:
        pass
    if clean in CATEGORY_ALIASES:
        return CATEGORY_ALIASES[clean]

    best_distance: Optional[int] = None
    best: list[Category] = []
    for category in Category:
        dist = int(Levenshtein.distance(clean, category.value))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [category]
        elif dist == best_distance:
            best.append(category)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return None


def resolve_goal_category(label: Optional[str]) -> GoalCategory:
    clean = (label or "").strip().lower()
    try:
        return GoalCategory(clean)
    except ValueError:
        return GOAL_CATEGORY_ALIASES.get(clean, GoalCategory.general)


def _check_direction(txn_type: TransactionType, category: Category) -> None:
    if txn_type == TransactionType.expense and category == Category.salary:
        raise ValueError("Salary is an income-only category")


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[Category] = None


class TransactionService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = owner_id

    def create(self, data: TransactionIn) -> Transaction:
        _check_direction(data.type, data.category)
        txn = Transaction(
            owner_id=data.owner_id,
            occurred_at=data.occurred_at or local_now(),
            type=data.type,
            amount_cents=to_cents(data.amount),
            category=data.category,
            description=data.description,
            source=data.source,
        )
        if txn.amount_cents <= 0:
            raise ValueError("Amount must be positive")
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def record_extracted(
        self,
        owner_id: str,
        extracted: ExtractedTransaction,
        source: TransactionSource,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Transaction]:
        category = resolve_category(extracted.category)
        if category is None:
            logger.info(f"extraction_discarded: unknown category={extracted.category!r}")
            return None
        if extracted.type == TransactionType.expense and category == Category.salary:
            logger.info("extraction_discarded: salary expense")
            return None
        try:
            data = TransactionIn(
                owner_id=owner_id,
                amount=extracted.amount.quantize(Decimal("0.01"), ROUND_HALF_UP),
                type=extracted.type,
                category=category,
                description=extracted.description,
                occurred_at=now or local_now(),
                source=source,
            )
        except ValidationError as exc:
            logger.info(f"extraction_discarded: invalid fields errors={exc.error_count()}")
            return None
        return self.create(data)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or (self.owner_id and txn.owner_id != self.owner_id):
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        *,
        limit: int = 50,
        skip: int = 0,
    ) -> tuple[list[Transaction], int]:
        filters = filters or TransactionFilters()
        conditions = []
        if self.owner_id:
            conditions.append(Transaction.owner_id == self.owner_id)
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.category:
            conditions.append(Transaction.category == filters.category)

        total = self.session.execute(
            select(func.count(Transaction.id)).where(*conditions)
        ).scalar_one()
        stmt = (
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all()), int(total or 0)

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        if data.amount is not None:
            txn.amount_cents = to_cents(data.amount)
        if data.type is not None:
            txn.type = data.type
        if data.category is not None:
            txn.category = data.category
        if data.description is not None:
            txn.description = data.description.strip()
        if data.occurred_at is not None:
            txn.occurred_at = data.occurred_at
        if not txn.description:
            raise ValueError("Description cannot be empty")
        _check_direction(txn.type, txn.category)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()


class BudgetService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = owner_id

    @staticmethod
    def step_category(budget: Budget) -> Category:
        return BUDGET_CATEGORIES[min(budget.setup_step, len(BUDGET_CATEGORIES) - 1)]

    @staticmethod
    def completed_budgets(session: Session) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.limits))
            .where(Budget.setup_completed.is_(True))
            .order_by(Budget.id)
        )
        return list(session.scalars(stmt).all())

    def get(self) -> Optional[Budget]:
        if self.owner_id is None:
            return self.session.scalar(
                select(Budget)
                .where(Budget.setup_completed.is_(True))
                .order_by(Budget.id)
                .limit(1)
            )
        return self.session.scalar(select(Budget).where(Budget.owner_id == self.owner_id))

    def get_or_create(self) -> tuple[Budget, bool]:
        budget = self.get()
        if budget:
            return budget, False
        budget = Budget(owner_id=self.owner_id, setup_completed=False, setup_step=0)
        for category in BUDGET_CATEGORIES:
            budget.set_limit(category, 0)
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(f"budget_created: owner={self.owner_id}")
        return budget, True

    def record_setup_amount(self, budget: Budget, amount: int) -> Budget:
        if budget.setup_completed:
            raise ValueError("Budget setup already completed")
        if amount < 0:
            raise ValueError("Budget limits cannot be negative")
        category = self.step_category(budget)
        budget.set_limit(category, amount * 100)
        budget.setup_step += 1
        if budget.setup_step >= len(BUDGET_CATEGORIES):
            budget.setup_step = len(BUDGET_CATEGORIES)
            budget.setup_completed = True
            logger.info(f"budget_setup_completed: owner={budget.owner_id}")
        self.session.commit()
        return budget

    def reset(self) -> Budget:
        budget, _ = self.get_or_create()
        for category in BUDGET_CATEGORIES:
            budget.set_limit(category, 0)
        budget.setup_completed = False
        budget.setup_step = 0
        self.session.commit()
        logger.info(f"budget_reset: owner={budget.owner_id}")
        return budget

    def update(self, data: BudgetIn) -> Budget:
        self.owner_id = data.owner_id
        budget, _ = self.get_or_create()
        for category, amount in data.limits.items():
            budget.set_limit(category, to_cents(amount))
        budget.setup_completed = True
        budget.setup_step = len(BUDGET_CATEGORIES)
        self.session.commit()
        self.session.refresh(budget)
        return budget


@dataclass(frozen=True)
class PeriodStats:
    income_cents: int = 0
    expense_cents: int = 0
    count: int = 0

    @property
    def balance_cents(self) -> int:
        return self.income_cents - self.expense_cents


def calculate_stats(transactions: Iterable[Transaction]) -> PeriodStats:
    income = 0
    expense = 0
    count = 0
    for txn in transactions:
        count += 1
        if txn.type == TransactionType.income:
            income += txn.amount_cents
        else:
            expense += txn.amount_cents
    return PeriodStats(income_cents=income, expense_cents=expense, count=count)


@dataclass(frozen=True)
class CategoryTotal:
    category: Category
    total_cents: int
    count: int


@dataclass(frozen=True)
class BudgetLine:
    category: Category
    budget_cents: int
    spent_cents: int

    @property
    def remaining_cents(self) -> int:
        return self.budget_cents - self.spent_cents

    @property
    def percentage(self) -> int:
        return percentage(self.spent_cents, self.budget_cents)

    @property
    def over_budget(self) -> bool:
        return self.spent_cents > self.budget_cents


@dataclass
class BudgetComparison:
    lines: list[BudgetLine] = field(default_factory=list)

    @property
    def total_budget_cents(self) -> int:
        return sum(line.budget_cents for line in self.lines)

    @property
    def total_spent_cents(self) -> int:
        return sum(line.spent_cents for line in self.lines)

    @property
    def total_saved_cents(self) -> int:
        return self.total_budget_cents - self.total_spent_cents

    @property
    def overall_percentage(self) -> int:
        return percentage(self.total_spent_cents, self.total_budget_cents)

    @property
    def saved_money(self) -> bool:
        return self.total_saved_cents > 0


class StatsService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = owner_id

    def _owner_filter(self) -> list:
        if self.owner_id:
            return [Transaction.owner_id == self.owner_id]
        return []

    def for_window(self, window: Window) -> PeriodStats:
        stmt = select(Transaction).where(
            *self._owner_filter(),
            Transaction.occurred_at >= window.start,
            Transaction.occurred_at < window.end,
        )
        return calculate_stats(self.session.scalars(stmt).all())

    def daily(self, now: Optional[datetime] = None) -> PeriodStats:
        return self.for_window(resolve_window("day", now))

    def weekly(self, now: Optional[datetime] = None) -> PeriodStats:
        return self.for_window(resolve_window("week", now))

    def monthly(self, now: Optional[datetime] = None) -> PeriodStats:
        return self.for_window(resolve_window("month", now))

    def category_breakdown(self, window: Window) -> list[CategoryTotal]:
        total = func.sum(Transaction.amount_cents).label("total")
        stmt = (
            select(Transaction.category, total, func.count(Transaction.id))
            .where(
                *self._owner_filter(),
                Transaction.type == TransactionType.expense,
                Transaction.occurred_at >= window.start,
                Transaction.occurred_at < window.end,
            )
            .group_by(Transaction.category)
            .order_by(total.desc())
        )
        return [
            CategoryTotal(category=row[0], total_cents=int(row[1] or 0), count=row[2])
            for row in self.session.execute(stmt).all()
        ]

    def categories(self, now: Optional[datetime] = None) -> list[CategoryTotal]:
        return self.category_breakdown(month_window(now))

    def category_totals(self, window: Window) -> dict[Category, int]:
        return {row.category: row.total_cents for row in self.category_breakdown(window)}

    def category_spent_since(self, category: Category, since: datetime) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            *self._owner_filter(),
            Transaction.type == TransactionType.expense,
            Transaction.category == category,
            Transaction.occurred_at >= since,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def expenses(self, window: Window) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                *self._owner_filter(),
                Transaction.type == TransactionType.expense,
                Transaction.occurred_at >= window.start,
                Transaction.occurred_at < window.end,
            )
            .order_by(Transaction.occurred_at, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def expense_count(self, window: Window) -> int:
        stmt = select(func.count(Transaction.id)).where(
            *self._owner_filter(),
            Transaction.type == TransactionType.expense,
            Transaction.occurred_at >= window.start,
            Transaction.occurred_at < window.end,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def previous_month_spent(self, now: Optional[datetime] = None) -> int:
        return self.for_window(previous_month_window(now)).expense_cents

    def budget_comparison(
        self, budget: Optional[Budget], now: Optional[datetime] = None
    ) -> Optional[BudgetComparison]:
        if budget is None or not budget.setup_completed:
            return None
        spent = self.category_totals(month_window(now))
        comparison = BudgetComparison()
        for category in BUDGET_CATEGORIES:
            limit = budget.limit_for(category)
            if limit <= 0:
                continue
            comparison.lines.append(
                BudgetLine(
                    category=category,
                    budget_cents=limit,
                    spent_cents=spent.get(category, 0),
                )
            )
        return comparison


def recompute_goal_derived(
    goal: Goal, today: Optional[date] = None, now: Optional[datetime] = None
) -> Goal:
    """Refresh progress, completion and suggested contributions in place."""
    today = today or local_today()
    goal.progress_percentage = percentage(goal.current_cents, goal.target_cents)

    if goal.status == GoalStatus.active and goal.current_cents >= goal.target_cents:
        goal.status = GoalStatus.completed
        goal.completed_at = now or local_now()

    if goal.status != GoalStatus.active:
        return goal
    if goal.deadline is None:
        goal.weekly_target_cents = None
        goal.monthly_target_cents = None
        return goal

    days = (goal.deadline - today).days
    remaining = max(goal.target_cents - goal.current_cents, 0)
    weeks = _ceil_div(days, 7)
    months = _ceil_div(days, 30)
    goal.weekly_target_cents = _ceil_units_per(remaining, weeks) if weeks > 0 else None
    goal.monthly_target_cents = (
        _ceil_units_per(remaining, months) if months > 0 else None
    )
    return goal


def time_remaining(deadline: Optional[date], today: Optional[date] = None) -> Optional[dict]:
    if deadline is None:
        return None
    today = today or local_today()
    days = (deadline - today).days
    if days < 0:
        return {"days": 0, "weeks": 0, "months": 0, "expired": True}
    return {
        "days": days,
        "weeks": _ceil_div(days, 7),
        "months": _ceil_div(days, 30),
        "expired": False,
    }


def goal_summary(goal: Goal, today: Optional[date] = None) -> dict:
    remaining = max(goal.target_cents - goal.current_cents, 0)
    return {
        "current": cents_to_units(goal.current_cents),
        "target": cents_to_units(goal.target_cents),
        "remaining": cents_to_units(remaining),
        "percentage": goal.progress_percentage,
        "weekly_target": (
            cents_to_units(goal.weekly_target_cents)
            if goal.weekly_target_cents is not None
            else None
        ),
        "monthly_target": (
            cents_to_units(goal.monthly_target_cents)
            if goal.monthly_target_cents is not None
            else None
        ),
        "time_remaining": time_remaining(goal.deadline, today),
        "is_completed": goal.status == GoalStatus.completed,
    }


class GoalService:
    def __init__(self, session: Session, owner_id: Optional[str] = None) -> None:
        self.session = session
        self.owner_id = owner_id

    def create(self, data: GoalIn, *, today: Optional[date] = None) -> Goal:
        goal = Goal(
            owner_id=data.owner_id,
            title=data.title.strip(),
            description=(data.description or "").strip() or None,
            target_cents=to_cents(data.target_amount),
            current_cents=0,
            deadline=data.deadline,
            category=data.category,
            status=GoalStatus.active,
        )
        if not goal.title:
            raise ValueError("Title cannot be empty")
        recompute_goal_derived(goal, today)
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        logger.info(f"goal_created: owner={goal.owner_id} id={goal.id}")
        return goal

    def create_from_draft(
        self, owner_id: str, draft: GoalDraft, *, today: Optional[date] = None
    ) -> Goal:
        today = today or local_today()
        deadline = draft.deadline if draft.deadline and draft.deadline > today else None
        return self.create(
            GoalIn(
                owner_id=owner_id,
                title=draft.title.strip()[:100],
                description=(draft.description or "")[:500] or None,
                target_amount=draft.target_amount.quantize(
                    Decimal("0.01"), ROUND_HALF_UP
                ),
                deadline=deadline,
                category=resolve_goal_category(draft.category),
            ),
            today=today,
        )

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or (self.owner_id and goal.owner_id != self.owner_id):
            raise NotFoundError("Goal not found")
        return goal

    def list(self, status: Optional[GoalStatus] = None) -> list[Goal]:
        if not self.owner_id:
            raise ValueError("userId is required")
        stmt = select(Goal).where(Goal.owner_id == self.owner_id)
        if status:
            stmt = stmt.where(Goal.status == status)
        stmt = stmt.order_by(Goal.created_at.desc(), Goal.id.desc())
        return list(self.session.scalars(stmt).all())

    def active(self) -> list[Goal]:
        return self.list(GoalStatus.active)

    def recently_completed(self, limit: int = 3) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.owner_id == self.owner_id, Goal.status == GoalStatus.completed)
            .order_by(Goal.completed_at.desc(), Goal.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def latest_active(self) -> Optional[Goal]:
        goals = self.active()
        return goals[0] if goals else None

    def count_active(self) -> int:
        stmt = select(func.count(Goal.id)).where(
            Goal.owner_id == self.owner_id, Goal.status == GoalStatus.active
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def update(
        self, goal_id: int, data: GoalUpdate, *, today: Optional[date] = None
    ) -> Goal:
        goal = self.get(goal_id)
        fields = data.model_fields_set
        if data.title is not None:
            goal.title = data.title.strip()
        if "description" in fields:
            goal.description = (data.description or "").strip() or None
        if data.target_amount is not None:
            goal.target_cents = to_cents(data.target_amount)
        if "deadline" in fields:
            goal.deadline = data.deadline
        if data.category is not None:
            goal.category = data.category
        if data.status is not None and data.status != goal.status:
            if goal.status != GoalStatus.active:
                raise GoalNotActive("Goal is already closed")
            goal.status = data.status
            if data.status == GoalStatus.completed:
                goal.completed_at = local_now()
        if not goal.title:
            raise ValueError("Title cannot be empty")
        recompute_goal_derived(goal, today)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def add_progress(
        self, goal_id: int, amount: Decimal, *, today: Optional[date] = None
    ) -> Goal:
        cents = to_cents(amount)
        if cents <= 0:
            raise ValueError("Amount must be positive")
        goal = self.get(goal_id)
        if goal.status != GoalStatus.active:
            raise GoalNotActive(f"Cannot add progress to a {goal.status.value} goal")
        goal.current_cents += cents
        recompute_goal_derived(goal, today)
        self.session.commit()
        self.session.refresh(goal)
        logger.info(
            f"goal_progress: id={goal.id} current={goal.current_cents} status={goal.status.value}"
        )
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()

    def summary(self, goal_id: int, *, today: Optional[date] = None) -> dict:
        return goal_summary(self.get(goal_id), today)
