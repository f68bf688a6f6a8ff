"""Outbound chat texts."""

from __future__ import annotations

from datetime import date
from typing import Optional

from models import BUDGET_CATEGORIES, Budget, Category, Goal, Transaction, TransactionType
from services import (
    BudgetComparison,
    CategoryTotal,
    PeriodStats,
    percentage,
    time_remaining,
)

CATEGORY_LABELS: dict[Category, str] = {
    Category.food: "🍔 Food",
    Category.transport: "🚗 Transport",
    Category.shopping: "🛍️ Shopping",
    Category.bills: "📄 Bills",
    Category.entertainment: "🎬 Entertainment",
    Category.health: "💊 Health",
    Category.general: "📦 General",
    Category.salary: "💼 Salary",
}

ORACLE_APOLOGY = (
    "Sorry, I can't analyze messages right now. Please try again in a few minutes."
)
GENERIC_ERROR = "Something went wrong. Please try again."


def money(cents: int) -> str:
    if cents % 100 == 0:
        return f"₪{cents // 100:,}"
    return f"₪{cents / 100:,.2f}"


def progress_bar(pct: int, cells: int = 10) -> str:
    filled = max(0, min(cells, pct // 10))
    return "█" * filled + "░" * (cells - filled)


def label(category: Category) -> str:
    return CATEGORY_LABELS.get(category, category.value)


def setup_prompt(budget: Budget, *, retry: bool = False) -> str:
    step = min(budget.setup_step, len(BUDGET_CATEGORIES) - 1)
    category = BUDGET_CATEGORIES[step]
    lead = "Please send a valid number.\n" if retry else ""
    return (
        f"{lead}What is your monthly budget for {label(category)}? "
        f"({step + 1}/{len(BUDGET_CATEGORIES)})\n"
        "Reply with a number, or 0 to skip."
    )


def welcome(budget: Budget) -> str:
    return (
        "👋 Welcome to Bought!\n"
        "I track your expenses and income from plain messages and receipt photos.\n"
        "Let's set up your monthly budget first.\n\n" + setup_prompt(budget)
    )


def finish_setup_first(budget: Budget) -> str:
    return "Please finish setting up your budget first.\n\n" + setup_prompt(budget)


def reset_ack(budget: Budget) -> str:
    return "🔄 Your budget was reset. Let's set it up again.\n\n" + setup_prompt(budget)


def setup_summary(budget: Budget) -> str:
    lines = ["✅ Your monthly budget is ready!", ""]
    for category in BUDGET_CATEGORIES:
        lines.append(f"{label(category)}: {money(budget.limit_for(category))}")
    lines.append("")
    lines.append(f"Total: {money(budget.total_cents())}")
    lines.append("")
    lines.append('Now just tell me what you spent, e.g. "bought coffee for 18".')
    lines.append('Send "help" to see everything I can do.')
    return "\n".join(lines)


def help_text() -> str:
    return "\n".join(
        [
            "🤖 How to use Bought",
            "",
            '• Record: "bought coffee for 18", "got salary 12000"',
            "• Send a receipt photo to record it automatically",
            '• "today", "this week", "this month": your stats',
            '• "categories": spending by category',
            '• "new goal": create a savings goal',
            '• "my goals" / "goal progress": track your goals',
            '• "can I afford ...?": ask for advice',
            '• "reset budget": set up your budget again',
        ]
    )


def stats_message(title: str, stats: PeriodStats) -> str:
    if stats.count == 0:
        return f"📊 {title}\n\nNo transactions yet."
    return "\n".join(
        [
            f"📊 {title}",
            "",
            f"💰 Income: {money(stats.income_cents)}",
            f"💸 Expenses: {money(stats.expense_cents)}",
            f"📈 Balance: {money(stats.balance_cents)}",
            f"🧾 Transactions: {stats.count}",
        ]
    )


def categories_message(totals: list[CategoryTotal]) -> str:
    if not totals:
        return "📂 No expenses recorded this month."
    overall = sum(row.total_cents for row in totals)
    lines = ["📂 Expenses by category this month", ""]
    for row in totals:
        share = percentage(row.total_cents, overall)
        lines.append(f"{label(row.category)}: {money(row.total_cents)} ({share}%)")
    lines.append("")
    lines.append(f"Total: {money(overall)}")
    return "\n".join(lines)


def transaction_saved(txn: Transaction) -> str:
    icon = "💸" if txn.type == TransactionType.expense else "💰"
    kind = "Expense" if txn.type == TransactionType.expense else "Income"
    return "\n".join(
        [
            f"{icon} {kind} saved",
            "",
            f"📝 {txn.description}",
            f"🏷️ {label(txn.category)}",
            f"💵 {money(txn.amount_cents)}",
        ]
    )


def receipt_saved(
    txn: Transaction, merchant: Optional[str], items: list[str]
) -> str:
    lines = [transaction_saved(txn)]
    if merchant:
        lines.append(f"🏪 {merchant}")
    if items:
        lines.append("")
        lines.append("Items:")
        lines.extend(f"• {item}" for item in items[:3])
        if len(items) > 3:
            lines.append(f"... and {len(items) - 3} more")
    return "\n".join(lines)


RECEIPT_PROCESSING = "🧾 Got your receipt, reading it..."
RECEIPT_UNREADABLE = (
    "I couldn't read this receipt. Try a sharper photo or type the expense instead."
)

GOAL_INSTRUCTIONS = "\n".join(
    [
        "🎯 New savings goal",
        "",
        "Describe your goal in one message, for example:",
        '"Save 5000 for a trip to Greece by 30.6.2026"',
        "",
        'Send "cancel" to stop.',
    ]
)
GOAL_CANCELLED = "Goal creation cancelled."
GOAL_ANALYZING = "🔍 Analyzing your goal..."
GOAL_RETRY = (
    "I couldn't understand the goal. Please include what you're saving for and "
    'the amount, or send "cancel".'
)


def goal_created(goal: Goal, today: Optional[date] = None) -> str:
    lines = ["🎯 Goal created!", "", f"📌 {goal.title}"]
    if goal.description:
        lines.append(f"📝 {goal.description}")
    lines.append(f"💰 Target: {money(goal.target_cents)}")
    remaining = time_remaining(goal.deadline, today)
    if goal.deadline:
        lines.append(f"📅 Deadline: {goal.deadline.strftime('%d/%m/%Y')}")
        if remaining and not remaining["expired"]:
            lines.append(f"⏳ {remaining['days']} days left")
    if goal.weekly_target_cents:
        lines.append(f"📆 Save {money(goal.weekly_target_cents)} per week")
    if goal.monthly_target_cents:
        lines.append(f"🗓️ Or {money(goal.monthly_target_cents)} per month")
    return "\n".join(lines)


def goals_list(active: list[Goal], completed: list[Goal], today: Optional[date] = None) -> str:
    if not active and not completed:
        return 'You have no savings goals yet. Send "new goal" to create one.'
    lines = ["🎯 Your goals", ""]
    for goal in active:
        lines.append(f"📌 {goal.title}")
        lines.append(f"{progress_bar(goal.progress_percentage)} {goal.progress_percentage}%")
        remaining_cents = max(goal.target_cents - goal.current_cents, 0)
        lines.append(
            f"{money(goal.current_cents)} / {money(goal.target_cents)}"
            f" ({money(remaining_cents)} to go)"
        )
        remaining = time_remaining(goal.deadline, today)
        if remaining:
            if remaining["expired"]:
                lines.append("⚠️ Deadline passed")
            else:
                lines.append(f"⏳ {remaining['days']} days ({remaining['weeks']} weeks) left")
        if goal.weekly_target_cents:
            lines.append(f"📆 {money(goal.weekly_target_cents)} per week")
        lines.append("")
    if completed:
        lines.append("✅ Completed")
        lines.extend(f"• {goal.title} ({money(goal.target_cents)})" for goal in completed)
    return "\n".join(lines).strip()


def goal_progress(goal: Optional[Goal], today: Optional[date] = None) -> str:
    if goal is None:
        return 'You have no active goals. Send "new goal" to create one.'
    today = today or date.today()
    remaining_cents = max(goal.target_cents - goal.current_cents, 0)
    lines = [
        f"📌 {goal.title}",
        "",
        f"{progress_bar(goal.progress_percentage)} {goal.progress_percentage}%",
        f"💰 Saved: {money(goal.current_cents)} of {money(goal.target_cents)}",
        f"🎯 Remaining: {money(remaining_cents)}",
    ]
    remaining = time_remaining(goal.deadline, today)
    if remaining:
        if remaining["expired"]:
            lines.append("⚠️ The deadline has passed")
        else:
            lines.append(f"⏳ {remaining['days']} days left")
            started = goal.created_at.date() if goal.created_at else today
            total_days = max((goal.deadline - started).days, 1)
            elapsed = min(max((today - started).days, 0), total_days)
            expected = percentage(elapsed, total_days)
            if goal.progress_percentage >= expected:
                lines.append(f"✅ On track (expected {expected}% by now)")
            else:
                lines.append(f"⚠️ Behind pace (expected {expected}% by now)")
    if goal.weekly_target_cents:
        lines.append(f"📆 Save {money(goal.weekly_target_cents)} per week to make it")
    return "\n".join(lines)


def alert_over(category: Category, spent: int, limit: int, pct: int) -> str:
    return "\n".join(
        [
            f"🚨 Budget exceeded: {label(category)}",
            "",
            f"Budget: {money(limit)}",
            f"Spent: {money(spent)} ({pct}%)",
            f"Over by: {money(spent - limit)}",
        ]
    )


def alert_critical(category: Category, spent: int, limit: int, pct: int) -> str:
    return (
        f"⚠️ Almost at your {label(category)} budget: {pct}% used.\n"
        f"Only {money(limit - spent)} left this month."
    )


def alert_warning(category: Category, spent: int, limit: int, pct: int) -> str:
    return (
        f"💡 Heads up: {pct}% of your {label(category)} budget is used.\n"
        f"{money(limit - spent)} left this month."
    )


def daily_budget_digest(
    over: list[tuple[Category, int, int, int]],
    near: list[tuple[Category, int, int, int]],
) -> str:
    lines = ["📋 Daily budget check", ""]
    if over:
        lines.append("🚨 Over budget:")
        for category, spent, limit, pct in over:
            lines.append(f"• {label(category)}: {money(spent)} / {money(limit)} ({pct}%)")
        lines.append("")
    if near:
        lines.append("⚠️ Close to the limit:")
        for category, spent, limit, pct in near:
            lines.append(f"• {label(category)}: {pct}% used, {money(limit - spent)} left")
    return "\n".join(lines).strip()


def monthly_report(
    comparison: BudgetComparison,
    previous_month_cents: int,
    summary: Optional[str],
    anomalies: list[tuple[Category, int, int, int]],
    savings: Optional[str] = None,
) -> str:
    lines = ["📅 Your monthly report", ""]
    if summary:
        lines.extend([summary, ""])
    lines.append(f"Budget: {money(comparison.total_budget_cents)}")
    lines.append(
        f"Spent: {money(comparison.total_spent_cents)} ({comparison.overall_percentage}%)"
    )
    if comparison.saved_money:
        lines.append(f"💚 Saved: {money(comparison.total_saved_cents)}")
    else:
        lines.append(f"🔴 Over budget by: {money(-comparison.total_saved_cents)}")
    if previous_month_cents:
        lines.append(f"Last month: {money(previous_month_cents)}")
    lines.append("")
    for line in comparison.lines:
        marker = "🔴" if line.over_budget else "🟢"
        lines.append(
            f"{marker} {label(line.category)}: {money(line.spent_cents)} / "
            f"{money(line.budget_cents)} ({line.percentage}%)"
        )
    if anomalies:
        lines.append("")
        lines.append("🔎 Unusual this month:")
        for category, current, average, deviation in anomalies:
            direction = "above" if deviation > 0 else "below"
            lines.append(
                f"• {label(category)}: {money(current)}, {abs(deviation)}% {direction} "
                f"your usual {money(average)}"
            )
    if savings:
        lines.extend(["", "💡 Savings tip:", savings])
    return "\n".join(lines).strip()
