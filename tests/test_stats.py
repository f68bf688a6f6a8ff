from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Category, Transaction, TransactionType
from periods import day_window, month_window, previous_month_window, week_start, week_window
from schemas import BudgetIn, TransactionIn
from services import BudgetService, StatsService, TransactionService, calculate_stats


def _add(session, owner, when, amount, txn_type=TransactionType.expense, category=Category.food):
    return TransactionService(session).create(
        TransactionIn(
            owner_id=owner,
            amount=Decimal(amount),
            type=txn_type,
            category=category,
            description="entry",
            occurred_at=when,
        )
    )


def test_week_starts_on_monday_and_sunday_closes_it() -> None:
    sunday = date(2025, 3, 16)
    assert week_start(sunday) == date(2025, 3, 10)
    assert week_start(date(2025, 3, 17)) == date(2025, 3, 17)

    window = week_window(datetime(2025, 3, 16, 21, 0))
    assert window.start == datetime(2025, 3, 10)
    assert window.end == datetime(2025, 3, 17)
    assert window.contains(datetime(2025, 3, 16, 23, 59))
    assert not window.contains(datetime(2025, 3, 17, 0, 0))


def test_weekly_stats_put_sunday_in_the_week_it_ends() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _add(session, "u1", datetime(2025, 3, 16, 18, 0), "40")
        _add(session, "u1", datetime(2025, 3, 17, 9, 0), "25")

        stats = StatsService(session, "u1")
        sunday_week = stats.weekly(datetime(2025, 3, 16, 20, 0))
        assert sunday_week.expense_cents == 40_00
        assert sunday_week.count == 1

        monday_week = stats.weekly(datetime(2025, 3, 17, 20, 0))
        assert monday_week.expense_cents == 25_00
        assert monday_week.count == 1


def test_calculate_stats_derives_balance() -> None:
    stats = calculate_stats(
        [
            Transaction(type=TransactionType.income, amount_cents=1000_00),
            Transaction(type=TransactionType.expense, amount_cents=250_50),
            Transaction(type=TransactionType.expense, amount_cents=49_50),
        ]
    )
    assert stats.income_cents == 1000_00
    assert stats.expense_cents == 300_00
    assert stats.balance_cents == 700_00
    assert stats.count == 3


def test_daily_and_monthly_windows_are_owner_scoped() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        now = datetime(2025, 3, 20, 12, 0)
        _add(session, "u1", datetime(2025, 3, 20, 8, 0), "10")
        _add(session, "u1", datetime(2025, 3, 2, 8, 0), "30")
        _add(session, "u1", datetime(2025, 2, 28, 8, 0), "99")
        _add(session, "u2", datetime(2025, 3, 20, 9, 0), "500")
        _add(
            session,
            "u1",
            datetime(2025, 3, 1, 0, 0),
            "1000",
            TransactionType.income,
            Category.salary,
        )

        stats = StatsService(session, "u1")
        assert stats.daily(now).expense_cents == 10_00
        monthly = stats.monthly(now)
        assert monthly.expense_cents == 40_00
        assert monthly.income_cents == 1000_00
        assert monthly.balance_cents == 960_00
        assert stats.previous_month_spent(now) == 99_00

        everyone = StatsService(session).daily(now)
        assert everyone.expense_cents == 510_00

    assert day_window(datetime(2025, 3, 20, 12)).end == datetime(2025, 3, 21)
    assert month_window(datetime(2025, 12, 5)).end == datetime(2026, 1, 1)
    assert previous_month_window(datetime(2025, 1, 5)).start == datetime(2024, 12, 1)


def test_categories_are_expense_only_and_sorted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        now = datetime(2025, 3, 20, 12, 0)
        _add(session, "u1", datetime(2025, 3, 3), "20", category=Category.food)
        _add(session, "u1", datetime(2025, 3, 4), "15", category=Category.food)
        _add(session, "u1", datetime(2025, 3, 5), "120", category=Category.bills)
        _add(session, "u1", datetime(2025, 3, 6), "5", category=Category.transport)
        _add(
            session,
            "u1",
            datetime(2025, 3, 7),
            "9000",
            TransactionType.income,
            Category.salary,
        )

        rows = StatsService(session, "u1").categories(now)
        assert [(r.category, r.total_cents, r.count) for r in rows] == [
            (Category.bills, 120_00, 1),
            (Category.food, 35_00, 2),
            (Category.transport, 5_00, 1),
        ]


def test_budget_comparison_covers_monitored_categories() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        now = datetime(2025, 3, 20, 12, 0)
        budget = BudgetService(session).update(
            BudgetIn(
                owner_id="u1",
                limits={Category.food: Decimal("1000"), Category.bills: Decimal("500")},
            )
        )
        _add(session, "u1", datetime(2025, 3, 3), "600", category=Category.food)
        _add(session, "u1", datetime(2025, 3, 4), "650", category=Category.bills)
        _add(session, "u1", datetime(2025, 3, 5), "70", category=Category.shopping)

        comparison = StatsService(session, "u1").budget_comparison(budget, now)
        lines = {line.category: line for line in comparison.lines}
        assert set(lines) == {Category.food, Category.bills}
        assert lines[Category.food].remaining_cents == 400_00
        assert lines[Category.food].percentage == 60
        assert lines[Category.food].over_budget is False
        assert lines[Category.bills].remaining_cents == -150_00
        assert lines[Category.bills].percentage == 130
        assert lines[Category.bills].over_budget is True
        assert comparison.total_budget_cents == 1500_00
        assert comparison.total_spent_cents == 1250_00
        assert comparison.overall_percentage == 83
        assert comparison.saved_money is True
