from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

import replies
from conftest import NOW, complete_budget, make_settings, text
from controller import SessionController, SessionMode, match_command
from models import Category, Goal, GoalCategory, Transaction, TransactionSource, TransactionType
from oracle import OracleError
from schemas import ExtractedReceipt, ExtractedTransaction, GoalDraft, TransactionIn
from services import TransactionService
from transport import InboundMessage, WebBridgeTransport


def _transactions(engine, owner):
    with Session(engine) as session:
        return list(
            session.scalars(select(Transaction).where(Transaction.owner_id == owner)).all()
        )


def _image(sender):
    return InboundMessage(
        sender_id=sender, kind="image", media_data=b"jpeg", mime_type="image/jpeg"
    )


@pytest.mark.parametrize(
    "message,expected",
    [
        ("help", "help"),
        ("help me pay rent", None),
        ("Reset budget", "reset_budget"),
        ("what did I spend today", "daily_stats"),
        ("How much did I spend this month?", "monthly_stats"),
        ("כמה הוצאתי החודש", "monthly_stats"),
        ("this week", "weekly_stats"),
        ("breakdown please", "category_stats"),
        ("new goal", "create_goal"),
        ("show goals", "list_goals"),
        ("goal status", "goal_progress"),
        ("can I afford a new phone?", "advice"),
        ("bought coffee for 18", None),
    ],
)
def test_match_command(message, expected) -> None:
    command = match_command(message)
    assert (command.name if command else None) == expected


def test_free_text_is_extracted_and_saved(controller, transport, oracle, session, engine) -> None:
    complete_budget(session, "u1", food=1000)
    oracle.transactions["bought coffee for 18"] = ExtractedTransaction(
        amount=Decimal("18"), description="coffee", category="food", type="expense"
    )

    controller.handle(text("u1", "bought coffee for 18"))

    saved = _transactions(engine, "u1")
    assert len(saved) == 1
    txn = saved[0]
    assert txn.amount_cents == 18_00
    assert txn.category == Category.food
    assert txn.type == TransactionType.expense
    assert txn.source == TransactionSource.web_chat
    assert txn.occurred_at == NOW
    assert transport.texts_to("u1") == [replies.transaction_saved(txn)]


def test_income_with_alias_category(controller, transport, oracle, session, engine) -> None:
    complete_budget(session, "u1", food=1000)
    oracle.transactions["got salary 12000"] = ExtractedTransaction(
        amount=Decimal("12000"), description="salary", category="משכורת", type="income"
    )

    controller.handle(text("u1", "got salary 12000"))

    txn = _transactions(engine, "u1")[0]
    assert txn.category == Category.salary
    assert txn.type == TransactionType.income
    assert "Income saved" in transport.texts_to("u1")[0]


def test_unparseable_message_is_silent(controller, transport, oracle, session, engine) -> None:
    complete_budget(session, "u1", food=1000)

    controller.handle(text("u1", "good morning"))

    assert oracle.called("parse_transaction")
    assert transport.sent == []
    assert _transactions(engine, "u1") == []


def test_expense_crossing_ninety_percent_sends_critical_alert(
    controller, transport, oracle, session, engine
) -> None:
    complete_budget(session, "u1", food=1000)
    TransactionService(session).create(
        TransactionIn(
            owner_id="u1",
            amount=Decimal("760"),
            type=TransactionType.expense,
            category=Category.food,
            description="groceries",
            occurred_at=datetime(2025, 3, 10, 12, 0),
        )
    )
    oracle.transactions["supermarket 160"] = ExtractedTransaction(
        amount=Decimal("160"), description="supermarket", category="groceries", type="expense"
    )

    controller.handle(text("u1", "supermarket 160"))

    sent = transport.texts_to("u1")
    assert len(sent) == 2
    assert "Expense saved" in sent[0]
    assert "92%" in sent[1]
    assert "Only ₪80 left" in sent[1]


def test_stats_commands(controller, transport, session) -> None:
    complete_budget(session, "u1", food=1000)
    TransactionService(session).create(
        TransactionIn(
            owner_id="u1",
            amount=Decimal("42.50"),
            type=TransactionType.expense,
            category=Category.food,
            description="lunch",
            occurred_at=datetime(2025, 3, 20, 9, 0),
        )
    )

    controller.handle(text("u1", "today"))
    controller.handle(text("u1", "this week"))
    controller.handle(text("u2", "today"))

    today, week = transport.texts_to("u1")
    assert "Today" in today
    assert "Expenses: ₪42.50" in today
    assert "This week" in week
    # u2 has no budget yet, so they are onboarded instead
    assert "Welcome to Bought" in transport.texts_to("u2")[0]


def test_goal_flow_captures_next_message(controller, transport, oracle, session, engine) -> None:
    complete_budget(session, "u1", food=1000)

    controller.handle(text("u1", "new goal"))
    assert transport.texts_to("u1")[-1] == replies.GOAL_INSTRUCTIONS
    assert controller.resolve_mode(session, "u1")[0] == SessionMode.awaiting_goal_input

    # a command phrase is still goal text while a goal is pending
    controller.handle(text("u1", "summary"))
    assert oracle.calls == [("parse_goal", "summary")]
    assert transport.texts_to("u1")[-1] == replies.GOAL_RETRY
    assert "u1" in controller.pending

    oracle.goal = GoalDraft(
        title="Trip to Greece",
        targetAmount=Decimal("5000"),
        deadline=date(2025, 6, 30),
        category="trip",
    )
    controller.handle(text("u1", "Save 5000 for Greece by end of June"))

    assert "Goal created!" in transport.texts_to("u1")[-1]
    assert "u1" not in controller.pending
    with Session(engine) as check:
        goal = check.scalars(select(Goal).where(Goal.owner_id == "u1")).one()
        assert goal.title == "Trip to Greece"
        assert goal.category == GoalCategory.trip
        assert goal.target_cents == 5000_00
        assert goal.weekly_target_cents is not None


def test_cancel_leaves_goal_mode_without_oracle_call(controller, transport, oracle, session) -> None:
    complete_budget(session, "u1", food=1000)

    controller.handle(text("u1", "new goal"))
    controller.handle(text("u1", "Cancel"))

    assert transport.texts_to("u1")[-1] == replies.GOAL_CANCELLED
    assert oracle.calls == []
    assert "u1" not in controller.pending


def test_goal_commands_without_goals(controller, transport, session) -> None:
    complete_budget(session, "u1", food=1000)

    controller.handle(text("u1", "my goals"))
    controller.handle(text("u1", "goal progress"))

    listing, progress = transport.texts_to("u1")
    assert "no savings goals yet" in listing
    assert "no active goals" in progress


def test_advice_uses_monthly_snapshot(controller, transport, oracle, session) -> None:
    complete_budget(session, "u1", food=1000, bills=500)

    controller.handle(text("u1", "Can I afford a new phone?"))

    name, snapshot = oracle.calls[0]
    assert name == "advise"
    assert snapshot["total_monthly_budget"] == 1500
    assert snapshot["active_goals"] == 0
    assert transport.texts_to("u1") == [oracle.advice]


def test_oracle_failure_sends_apology(controller, transport, oracle, session) -> None:
    complete_budget(session, "u1", food=1000)
    oracle.error = OracleError("quota exhausted", reason="quota")

    controller.handle(text("u1", "bought bread for 12"))

    assert transport.texts_to("u1") == [replies.ORACLE_APOLOGY]


def test_unexpected_failure_clears_pending_goal(controller, transport, oracle, session) -> None:
    complete_budget(session, "u1", food=1000)
    controller.handle(text("u1", "new goal"))
    oracle.error = RuntimeError("boom")

    controller.handle(text("u1", "save 100 for shoes"))

    assert transport.texts_to("u1")[-1] == replies.GENERIC_ERROR
    assert "u1" not in controller.pending


def test_stopped_controller_drops_messages(controller, transport) -> None:
    controller.stop()
    controller.handle(text("u1", "hello"))
    assert transport.sent == []


def test_image_before_setup_is_not_parsed(controller, transport, oracle, session) -> None:
    controller.handle(_image("u1"))
    assert "Welcome to Bought" in transport.texts_to("u1")[0]

    controller.handle(_image("u1"))
    assert "finish setting up your budget" in transport.texts_to("u1")[1]
    assert oracle.calls == []


def test_receipt_is_recorded_with_items(controller, transport, oracle, session, engine) -> None:
    complete_budget(session, "u1", food=1000)
    oracle.receipt = ExtractedReceipt(
        amount=Decimal("84.50"),
        description="Groceries",
        category="food",
        merchant="Corner Market",
        items=["milk", "bread", "eggs", "apples", "cheese"],
    )

    controller.handle(_image("u1"))

    assert oracle.calls == [("parse_receipt", transport.image)]
    processing, saved = transport.texts_to("u1")
    assert processing == replies.RECEIPT_PROCESSING
    assert "₪84.50" in saved
    assert "Corner Market" in saved
    assert "• eggs" in saved
    assert "apples" not in saved
    assert "... and 2 more" in saved

    txn = _transactions(engine, "u1")[0]
    assert txn.source == TransactionSource.web_chat_receipt
    assert txn.type == TransactionType.expense


def test_unreadable_receipt(controller, transport, oracle, session, engine) -> None:
    complete_budget(session, "u1", food=1000)

    controller.handle(_image("u1"))

    assert transport.texts_to("u1")[-1] == replies.RECEIPT_UNREADABLE
    assert _transactions(engine, "u1") == []


@pytest.mark.parametrize(
    "amount,description",
    [
        ("0.004", "coffee"),
        ("18", "   "),
        ("1234567890123", "car"),
    ],
)
def test_invalid_extracted_fields_are_discarded_silently(
    controller, transport, oracle, session, engine, amount, description
) -> None:
    complete_budget(session, "u1", food=1000)
    oracle.transactions["odd message"] = ExtractedTransaction(
        amount=Decimal(amount), description=description, category="food", type="expense"
    )

    controller.handle(text("u1", "odd message"))

    assert transport.sent == []
    assert _transactions(engine, "u1") == []


def _unreachable_bridge(engine, oracle, monkeypatch):
    bridge = WebBridgeTransport(make_settings(bridge_token=None, allowed_sender=None))

    def hang_up(recipient, body):
        raise ConnectionResetError("connection reset by peer")

    monkeypatch.setattr(bridge, "_deliver", hang_up)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionController(bridge, oracle, factory, clock=lambda: NOW)


def test_failed_error_reply_does_not_escape(engine, oracle, monkeypatch) -> None:
    ctl = _unreachable_bridge(engine, oracle, monkeypatch)

    ctl.handle(text("972500000001", "hello"))


def test_failed_apology_does_not_escape(engine, oracle, session, monkeypatch) -> None:
    complete_budget(session, "972500000001", food=1000)
    oracle.error = OracleError("quota exhausted", reason="quota")
    ctl = _unreachable_bridge(engine, oracle, monkeypatch)

    ctl.handle(text("972500000001", "bought bread for 12"))

    assert oracle.called("parse_transaction")
