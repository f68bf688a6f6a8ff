from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from models import BUDGET_CATEGORIES, Budget, Category, Transaction
from oracle import ExtractionOracle, OracleError
from periods import (
    is_last_day_of_month,
    local_now,
    month_window,
    trailing_months_window,
)
from services import BudgetService, StatsService, cents_to_units, percentage
from transport import Transport
import replies

logger = logging.getLogger(__name__)

NEAR_LIMIT_PCT = 85
ANOMALY_HISTORY_MONTHS = 3
ANOMALY_MIN_HISTORY = 20
ANOMALY_MIN_DEVIATION = Decimal("0.5")
ANOMALY_MIN_CURRENT_CENTS = 100 * 100
FREQUENT_MIN_COUNT = 3
FREQUENT_LIMIT = 3


class AlertLevel(str, Enum):
    warning = "warning"
    critical = "critical"
    over = "over"


def classify(pct: int) -> Optional[AlertLevel]:
    if pct >= 100:
        return AlertLevel.over
    if pct >= 90:
        return AlertLevel.critical
    if pct >= 75:
        return AlertLevel.warning
    return None


_FORMATTERS = {
    AlertLevel.over: replies.alert_over,
    AlertLevel.critical: replies.alert_critical,
    AlertLevel.warning: replies.alert_warning,
}


class AlertTrigger:
    def __init__(self, transport: Transport) -> None:
        self.transport = transport

    def evaluate(
        self,
        session: Session,
        owner_id: str,
        category: Category,
        now: Optional[datetime] = None,
    ) -> Optional[AlertLevel]:
        budget = BudgetService(session, owner_id).get()
        if budget is None or not budget.setup_completed:
            return None
        limit = budget.limit_for(category)
        if limit <= 0:
            return None

        window = month_window(now or local_now())
        spent = StatsService(session, owner_id).category_spent_since(
            category, window.start
        )
        pct = percentage(spent, limit)
        level = classify(pct)
        if level is None:
            return None

        logger.info(
            f"budget_alert: owner={owner_id} category={category.value} level={level.value} pct={pct}"
        )
        self.transport.send(owner_id, _FORMATTERS[level](category, spent, limit, pct))
        return level

    def _digest(
        self, session: Session, budget: Budget, now: datetime
    ) -> Optional[str]:
        window = month_window(now)
        spent_by_category = StatsService(session, budget.owner_id).category_totals(window)
        over = []
        near = []
        for category in BUDGET_CATEGORIES:
            limit = budget.limit_for(category)
            if limit <= 0:
                continue
            spent = spent_by_category.get(category, 0)
            pct = percentage(spent, limit)
            if pct >= 100:
                over.append((category, spent, limit, pct))
            elif pct >= NEAR_LIMIT_PCT:
                near.append((category, spent, limit, pct))
        if not over and not near:
            return None
        return replies.daily_budget_digest(over, near)

    def sweep(self, session: Session, now: Optional[datetime] = None) -> int:
        """Send at most one combined budget digest per owner; return messages sent."""
        now = now or local_now()
        sent = 0
        for budget in BudgetService.completed_budgets(session):
            owner_id = budget.owner_id
            try:
                message = self._digest(session, budget, now)
                if message and self.transport.send(owner_id, message):
                    sent += 1
            except Exception:
                logger.exception(f"budget_sweep_failed: owner={owner_id}")
                session.rollback()
        return sent


def detect_anomalies(
    current: dict[Category, int], historical_average: dict[Category, int]
) -> list[tuple[Category, int, int, int]]:
    """Categories whose spend this month deviates by half or more from the average.

    Returns (category, current_cents, average_cents, deviation_pct) tuples.
    """
    anomalies = []
    for category, average in historical_average.items():
        if average <= 0:
            continue
        spent = current.get(category, 0)
        if spent < ANOMALY_MIN_CURRENT_CENTS:
            continue
        deviation = (Decimal(spent) - Decimal(average)) / Decimal(average)
        if abs(deviation) < ANOMALY_MIN_DEVIATION:
            continue
        deviation_pct = int(
            (deviation * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )
        anomalies.append((category, spent, average, deviation_pct))
    anomalies.sort(key=lambda row: abs(row[3]), reverse=True)
    return anomalies


@dataclass(frozen=True)
class FrequentExpense:
    key: str
    description: str
    category: Category
    count: int
    total_cents: int

    @property
    def average_cents(self) -> int:
        return int(
            (Decimal(self.total_cents) / self.count).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )
        )


def frequent_expenses(
    expenses: Iterable[Transaction],
    *,
    min_count: int = FREQUENT_MIN_COUNT,
    limit: int = FREQUENT_LIMIT,
) -> list[FrequentExpense]:
    """Recurring purchases grouped by the first word of their description.

    Only groups seen at least ``min_count`` times are kept, largest total first.
    """
    groups: dict[str, dict] = {}
    for txn in expenses:
        words = (txn.description or "").lower().split()
        if not words:
            continue
        group = groups.setdefault(
            words[0],
            {"description": txn.description, "category": txn.category, "count": 0, "total": 0},
        )
        group["count"] += 1
        group["total"] += txn.amount_cents

    frequent = [
        FrequentExpense(
            key=key,
            description=group["description"],
            category=group["category"],
            count=group["count"],
            total_cents=group["total"],
        )
        for key, group in groups.items()
        if group["count"] >= min_count
    ]
    frequent.sort(key=lambda item: item.total_cents, reverse=True)
    return frequent[:limit]


class MonthlyReporter:
    def __init__(self, transport: Transport, oracle: ExtractionOracle) -> None:
        self.transport = transport
        self.oracle = oracle

    def _anomalies(
        self, stats: StatsService, now: datetime
    ) -> list[tuple[Category, int, int, int]]:
        history = trailing_months_window(ANOMALY_HISTORY_MONTHS, now)
        if stats.expense_count(history) < ANOMALY_MIN_HISTORY:
            return []
        averages = {
            category: total // ANOMALY_HISTORY_MONTHS
            for category, total in stats.category_totals(history).items()
        }
        return detect_anomalies(stats.category_totals(month_window(now)), averages)

    def _summary(self, owner_id: str, comparison, previous_cents: int) -> Optional[str]:
        try:
            return self.oracle.summarize_month(
                {
                    "total_budget": cents_to_units(comparison.total_budget_cents),
                    "total_spent": cents_to_units(comparison.total_spent_cents),
                    "overall_percentage": comparison.overall_percentage,
                    "previous_month_spent": cents_to_units(previous_cents),
                    "categories": [
                        {
                            "category": line.category.value,
                            "budget": cents_to_units(line.budget_cents),
                            "spent": cents_to_units(line.spent_cents),
                            "percentage": line.percentage,
                        }
                        for line in comparison.lines
                    ],
                }
            ) or None
        except OracleError as exc:
            logger.warning(f"monthly_summary_unavailable: owner={owner_id} reason={exc.reason}")
            return None

    def _savings(self, stats: StatsService, now: datetime) -> Optional[str]:
        frequent = frequent_expenses(stats.expenses(month_window(now)))
        if not frequent:
            return None
        return self.oracle.suggest_savings(
            [
                {
                    "description": item.description,
                    "category": item.category.value,
                    "count": item.count,
                    "total": cents_to_units(item.total_cents),
                    "average": cents_to_units(item.average_cents),
                }
                for item in frequent
            ]
        )

    def build_report(
        self, session: Session, budget: Budget, now: datetime
    ) -> Optional[str]:
        stats = StatsService(session, budget.owner_id)
        comparison = stats.budget_comparison(budget, now)
        if comparison is None or not comparison.lines:
            return None
        previous = stats.previous_month_spent(now)
        summary = self._summary(budget.owner_id, comparison, previous)
        return replies.monthly_report(
            comparison,
            previous,
            summary,
            self._anomalies(stats, now),
            savings=self._savings(stats, now),
        )

    def run(
        self, session: Session, now: Optional[datetime] = None, *, force: bool = False
    ) -> int:
        now = now or local_now()
        if not force and not is_last_day_of_month(now.date()):
            return 0
        sent = 0
        for budget in BudgetService.completed_budgets(session):
            owner_id = budget.owner_id
            try:
                report = self.build_report(session, budget, now)
                if report and self.transport.send(owner_id, report):
                    sent += 1
            except Exception:
                logger.exception(f"monthly_report_failed: owner={owner_id}")
                session.rollback()
        return sent