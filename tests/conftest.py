import copy
from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from config import get_settings
from controller import SessionController
from database import Base
from models import Category, TransactionSource
from schemas import BudgetIn
from services import BudgetService
from transport import InboundMessage, Transport

# Thursday, mid-month.
NOW = datetime(2025, 3, 20, 12, 0)


def make_settings(**overrides):
    settings = copy.copy(get_settings())
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


class FakeTransport(Transport):
    name = "fake"
    chat_source = TransactionSource.web_chat
    receipt_source = TransactionSource.web_chat_receipt

    def __init__(self, image: bytes = b"receipt-bytes") -> None:
        super().__init__(make_settings())
        self.sent: list[tuple[str, str]] = []
        self.image = image

    def parse_inbound(self, payload: dict) -> list[InboundMessage]:
        return [
            InboundMessage(sender_id=item["from"], kind="text", text=item["body"])
            for item in payload.get("messages", [])
        ]

    def _deliver(self, recipient: str, text: str) -> None:
        self.sent.append((recipient, text))

    def load_image(self, message: InboundMessage) -> bytes:
        return self.image

    def verify_token(self, token: Optional[str]) -> bool:
        return token == "secret"

    def texts_to(self, recipient: str) -> list[str]:
        return [text for to, text in self.sent if to == recipient]


class FakeOracle:
    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []
        self.transactions: dict[str, object] = {}
        self.goal = None
        self.receipt = None
        self.advice = "Yes, it fits your budget."
        self.summary = "A calm month."
        self.savings = "Brew coffee at home twice a week."
        self.error: Optional[Exception] = None

    def _record(self, name: str, arg: object) -> None:
        self.calls.append((name, arg))
        if self.error is not None:
            raise self.error

    def called(self, name: str) -> bool:
        return any(call[0] == name for call in self.calls)

    def parse_transaction(self, text):
        self._record("parse_transaction", text)
        return self.transactions.get(text)

    def parse_receipt(self, image, mime_type="image/jpeg"):
        self._record("parse_receipt", image)
        return self.receipt

    def parse_goal(self, text, today=None):
        self._record("parse_goal", text)
        return self.goal

    def summarize_month(self, data):
        self._record("summarize_month", data)
        return self.summary

    def suggest_savings(self, frequent):
        self._record("suggest_savings", frequent)
        return self.savings

    def advise(self, question, snapshot):
        self._record("advise", snapshot)
        return self.advice


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def controller(engine, transport, oracle) -> SessionController:
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionController(transport, oracle, factory, clock=lambda: NOW)


def complete_budget(session: Session, owner_id: str, **limits: int):
    return BudgetService(session).update(
        BudgetIn(
            owner_id=owner_id,
            limits={Category(name): Decimal(amount) for name, amount in limits.items()},
        )
    )


def text(sender: str, body: str) -> InboundMessage:
    return InboundMessage(sender_id=sender, kind="text", text=body)
