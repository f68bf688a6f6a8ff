"""Per-owner conversation flow for inbound chat messages.

Every text message is routed by a fixed precedence:

1. pending goal capture
2. budget onboarding (no budget yet, or setup unfinished)
3. keyword commands, first match in ``IDLE_COMMANDS`` wins
4. free-form transaction extraction

Images skip 1-3 and go straight to receipt extraction once onboarding is done.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from alerts import AlertTrigger
from models import Budget, TransactionType
from oracle import ExtractionOracle, OracleError
from periods import local_now
from services import (
    BudgetService,
    GoalService,
    StatsService,
    TransactionService,
    cents_to_units,
)
from transport import InboundMessage, Transport
import replies

logger = logging.getLogger(__name__)


class SessionMode(str, Enum):
    awaiting_goal_input = "awaiting_goal_input"
    budget_setup = "budget_setup"
    idle = "idle"


class PendingGoalRegistry:
    """Owners currently describing a new savings goal. Process-local."""

    def __init__(self) -> None:
        self._owners: set[str] = set()
        self._lock = threading.Lock()

    def add(self, owner_id: str) -> None:
        with self._lock:
            self._owners.add(owner_id)

    def discard(self, owner_id: str) -> None:
        with self._lock:
            self._owners.discard(owner_id)

    def __contains__(self, owner_id: object) -> bool:
        with self._lock:
            return owner_id in self._owners


@dataclass(frozen=True)
class Command:
    name: str
    phrases: tuple[str, ...]
    exact: bool = False

    def matches(self, text: str) -> bool:
        if self.exact:
            return text in self.phrases
        return any(phrase in text for phrase in self.phrases)


CANCEL_WORDS = frozenset({"cancel", "ביטול"})

# Order matters: substring phrases overlap ("goal status" vs "summary").
IDLE_COMMANDS: tuple[Command, ...] = (
    Command("help", ("/help", "help", "?", "/עזרה", "עזרה"), exact=True),
    Command(
        "reset_budget",
        ("/budget", "new budget", "reset budget", "/תקציב", "תקציב חדש", "הגדר תקציב"),
        exact=True,
    ),
    Command("daily_stats", ("today", "היום")),
    Command("weekly_stats", ("this week", "weekly", "השבוע", "שבועי")),
    Command(
        "monthly_stats",
        ("this month", "how much did i spend", "summary", "החודש", "כמה הוצאתי", "מצב", "סיכום"),
    ),
    Command("category_stats", ("categories", "breakdown", "קטגוריות", "פירוט")),
    Command("create_goal", ("/goal", "new goal", "savings goal", "/יעד", "יעד חדש", "יעד חיסכון")),
    Command("list_goals", ("my goals", "list goals", "show goals", "היעדים", "רשימת יעדים", "יעדים שלי")),
    Command("goal_progress", ("goal progress", "goal status", "התקדמות", "סטטוס יעד")),
    Command(
        "advice",
        (
            "can i afford",
            "should i buy",
            "is it worth buying",
            "האם אני יכול",
            "האם אפשר",
            "להרשות לעצמי",
            "כדאי לקנות",
        ),
    ),
)


def match_command(text: str) -> Optional[Command]:
    lowered = text.strip().lower()
    for command in IDLE_COMMANDS:
        if command.matches(lowered):
            return command
    return None


class SessionController:
    def __init__(
        self,
        transport: Transport,
        oracle: ExtractionOracle,
        session_factory: sessionmaker,
        *,
        alerts: Optional[AlertTrigger] = None,
        pending: Optional[PendingGoalRegistry] = None,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self.transport = transport
        self.oracle = oracle
        self.session_factory = session_factory
        self.alerts = alerts or AlertTrigger(transport)
        self.pending = pending or PendingGoalRegistry()
        self.clock = clock
        self.accepting = True

    def stop(self) -> None:
        self.accepting = False
        logger.info("controller_stopped: no longer accepting messages")

    def reply(self, owner_id: str, text: str) -> bool:
        return self.transport.send(owner_id, text)

    def resolve_mode(
        self, session: Session, owner_id: str
    ) -> tuple[SessionMode, Optional[Budget]]:
        if owner_id in self.pending:
            return SessionMode.awaiting_goal_input, None
        budget = BudgetService(session, owner_id).get()
        if budget is None or not budget.setup_completed:
            return SessionMode.budget_setup, budget
        return SessionMode.idle, budget

    def handle(self, message: InboundMessage) -> None:
        """Process one inbound message. Never raises."""
        if not self.accepting:
            logger.info(f"inbound_dropped: shutting down sender={message.sender_id}")
            return
        owner_id = message.sender_id
        logger.info(f"inbound: kind={message.kind} sender={owner_id}")
        try:
            with self.session_factory() as session:
                if message.kind == "image":
                    self._handle_image(session, message)
                else:
                    self._handle_text(session, owner_id, message.text)
        except OracleError as exc:
            logger.warning(f"oracle_failed: sender={owner_id} reason={exc.reason} error={exc}")
            self._reply_quietly(owner_id, replies.ORACLE_APOLOGY)
        except Exception:
            logger.exception(f"message_failed: sender={owner_id}")
            self.pending.discard(owner_id)
            self._reply_quietly(owner_id, replies.GENERIC_ERROR)

    def _reply_quietly(self, owner_id: str, text: str) -> None:
        try:
            self.reply(owner_id, text)
        except Exception:
            logger.exception(f"error_reply_failed: sender={owner_id}")

    def _handle_text(self, session: Session, owner_id: str, text: str) -> None:
        text = (text or "").strip()
        if not text:
            return
        mode, budget = self.resolve_mode(session, owner_id)
        logger.info(f"session_mode: sender={owner_id} mode={mode.value}")
        if mode == SessionMode.awaiting_goal_input:
            self._goal_input(session, owner_id, text)
            return
        if mode == SessionMode.budget_setup:
            self._budget_setup(session, owner_id, budget, text)
            return

        command = match_command(text)
        if command is not None:
            logger.info(f"command: sender={owner_id} name={command.name}")
            getattr(self, f"_cmd_{command.name}")(session, owner_id, text)
            return
        self._extract(session, owner_id, text)

    def _goal_input(self, session: Session, owner_id: str, text: str) -> None:
        if text.lower() in CANCEL_WORDS:
            self.pending.discard(owner_id)
            self.reply(owner_id, replies.GOAL_CANCELLED)
            return

        self.reply(owner_id, replies.GOAL_ANALYZING)
        today = self.clock().date()
        draft = self.oracle.parse_goal(text, today)
        if draft is None:
            self.reply(owner_id, replies.GOAL_RETRY)
            return
        goal = GoalService(session, owner_id).create_from_draft(
            owner_id, draft, today=today
        )
        self.pending.discard(owner_id)
        self.reply(owner_id, replies.goal_created(goal, today))

    def _budget_setup(
        self, session: Session, owner_id: str, budget: Optional[Budget], text: str
    ) -> None:
        service = BudgetService(session, owner_id)
        if budget is None:
            budget, _ = service.get_or_create()
            self.reply(owner_id, replies.welcome(budget))
            return

        digits = re.sub(r"\D", "", text)
        if not digits:
            self.reply(owner_id, replies.setup_prompt(budget, retry=True))
            return
        service.record_setup_amount(budget, int(digits))
        if budget.setup_completed:
            self.reply(owner_id, replies.setup_summary(budget))
        else:
            self.reply(owner_id, replies.setup_prompt(budget))

    def _cmd_help(self, session: Session, owner_id: str, text: str) -> None:
        self.reply(owner_id, replies.help_text())

    def _cmd_reset_budget(self, session: Session, owner_id: str, text: str) -> None:
        budget = BudgetService(session, owner_id).reset()
        self.reply(owner_id, replies.reset_ack(budget))

    def _cmd_daily_stats(self, session: Session, owner_id: str, text: str) -> None:
        stats = StatsService(session, owner_id).daily(self.clock())
        self.reply(owner_id, replies.stats_message("Today", stats))

    def _cmd_weekly_stats(self, session: Session, owner_id: str, text: str) -> None:
        stats = StatsService(session, owner_id).weekly(self.clock())
        self.reply(owner_id, replies.stats_message("This week", stats))

    def _cmd_monthly_stats(self, session: Session, owner_id: str, text: str) -> None:
        stats = StatsService(session, owner_id).monthly(self.clock())
        self.reply(owner_id, replies.stats_message("This month", stats))

    def _cmd_category_stats(self, session: Session, owner_id: str, text: str) -> None:
        totals = StatsService(session, owner_id).categories(self.clock())
        self.reply(owner_id, replies.categories_message(totals))

    def _cmd_create_goal(self, session: Session, owner_id: str, text: str) -> None:
        self.pending.add(owner_id)
        self.reply(owner_id, replies.GOAL_INSTRUCTIONS)

    def _cmd_list_goals(self, session: Session, owner_id: str, text: str) -> None:
        goals = GoalService(session, owner_id)
        self.reply(
            owner_id,
            replies.goals_list(
                goals.active(), goals.recently_completed(3), self.clock().date()
            ),
        )

    def _cmd_goal_progress(self, session: Session, owner_id: str, text: str) -> None:
        goal = GoalService(session, owner_id).latest_active()
        self.reply(owner_id, replies.goal_progress(goal, self.clock().date()))

    def _cmd_advice(self, session: Session, owner_id: str, text: str) -> None:
        now = self.clock()
        stats = StatsService(session, owner_id).monthly(now)
        budget = BudgetService(session, owner_id).get()
        snapshot = {
            "monthly_income": cents_to_units(stats.income_cents),
            "monthly_expenses": cents_to_units(stats.expense_cents),
            "monthly_balance": cents_to_units(stats.balance_cents),
            "total_monthly_budget": cents_to_units(budget.total_cents()) if budget else 0,
            "active_goals": GoalService(session, owner_id).count_active(),
        }
        answer = self.oracle.advise(text, snapshot)
        self.reply(owner_id, answer or replies.GENERIC_ERROR)

    def _extract(self, session: Session, owner_id: str, text: str) -> None:
        extracted = self.oracle.parse_transaction(text)
        if extracted is None:
            logger.info(f"extraction_empty: sender={owner_id}")
            return
        now = self.clock()
        txn = TransactionService(session, owner_id).record_extracted(
            owner_id, extracted, self.transport.chat_source, now=now
        )
        if txn is None:
            return
        logger.info(f"transaction_saved: sender={owner_id} id={txn.id} type={txn.type.value}")
        self.reply(owner_id, replies.transaction_saved(txn))
        if txn.type == TransactionType.expense:
            self.alerts.evaluate(session, owner_id, txn.category, now)

    def _handle_image(self, session: Session, message: InboundMessage) -> None:
        owner_id = message.sender_id
        service = BudgetService(session, owner_id)
        budget = service.get()
        if budget is None:
            budget, _ = service.get_or_create()
            self.reply(owner_id, replies.welcome(budget))
            return
        if not budget.setup_completed:
            self.reply(owner_id, replies.finish_setup_first(budget))
            return

        self.reply(owner_id, replies.RECEIPT_PROCESSING)
        image = self.transport.load_image(message)
        receipt = self.oracle.parse_receipt(image, message.mime_type or "image/jpeg")
        if receipt is None:
            self.reply(owner_id, replies.RECEIPT_UNREADABLE)
            return
        now = self.clock()
        txn = TransactionService(session, owner_id).record_extracted(
            owner_id, receipt, self.transport.receipt_source, now=now
        )
        if txn is None:
            self.reply(owner_id, replies.RECEIPT_UNREADABLE)
            return
        logger.info(f"receipt_saved: sender={owner_id} id={txn.id}")
        self.reply(owner_id, replies.receipt_saved(txn, receipt.merchant, receipt.items))
        if txn.type == TransactionType.expense:
            self.alerts.evaluate(session, owner_id, txn.category, now)
