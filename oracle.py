from __future__ import annotations

import base64
import json
import logging
from datetime import date
from typing import Any, Optional

from openai import (
    APIConnectionError,
    APIStatusError,
    AuthenticationError,
    OpenAI,
    OpenAIError,
    RateLimitError,
)
from pydantic import BaseModel, ValidationError

from config import get_settings
from schemas import ExtractedReceipt, ExtractedTransaction, GoalDraft

logger = logging.getLogger(__name__)

CATEGORY_NAMES = "food, transport, shopping, bills, entertainment, health, general, salary"

TRANSACTION_PROMPT = (
    "You extract a single financial transaction from a short chat message, "
    "which may be written in English or Hebrew. Return ONLY a JSON object: "
    '{"amount": number > 0, "description": short text (max 50 chars, in the '
    'language of the message), "category": one of ['
    + CATEGORY_NAMES
    + '], "type": "expense" | "income"}. '
    "salary is only for income. Use general when nothing else fits. "
    'If the message carries no financial information return {"type": null}. '
    'Example: "bought coffee for 18" -> {"amount": 18, "description": "coffee", '
    '"category": "food", "type": "expense"}.'
)

RECEIPT_PROMPT = (
    "You read a photographed receipt. Return ONLY a JSON object: "
    '{"amount": total payable (number), "description": short description, '
    '"category": one of [' + CATEGORY_NAMES.replace(", salary", "") + "], "
    '"type": "expense", "merchant": business name or null, '
    '"items": list of up to 10 item names}. '
    'If the image is not a readable receipt return {"type": null}.'
)

GOAL_PROMPT = (
    "You turn a free-text savings goal (English or Hebrew) into JSON. Today is "
    "{today}. Return ONLY a JSON object: "
    '{"title": short title (max 50 chars), "description": longer text or null, '
    '"targetAmount": number, "deadline": "YYYY-MM-DD" or null, '
    '"category": one of [trip, purchase, emergency, investment, general]}. '
    'If no valid goal can be recognised return {"title": null}.'
)

SUMMARY_PROMPT = (
    "You are a friendly personal-finance assistant. Write a short monthly "
    "summary (at most 5 sentences) for the user based on the JSON data you "
    "receive. Mention what went well and one concrete tip. Plain text only."
)

SAVINGS_PROMPT = (
    "You are a practical personal-finance coach. The user sends JSON describing "
    "purchases they repeated this month. Suggest one or two concrete ways to spend "
    "less on them, with an estimated monthly saving. At most 3 sentences, plain text."
)

ADVICE_PROMPT = (
    "You are a careful personal-finance advisor. Answer the user's question in "
    "at most 4 sentences, using only the financial snapshot provided as JSON. "
    "Be concrete about whether the purchase fits the remaining budget and the "
    "active savings goals. Answer in the language of the question."
)


class OracleError(RuntimeError):
    """The language model could not be reached or refused the request."""

    def __init__(self, message: str, reason: str = "unknown") -> None:
        super().__init__(message)
        self.reason = reason


class ExtractionOracle:
    def __init__(self, client: Optional[OpenAI] = None) -> None:
        self.settings = get_settings()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self.settings.openai_api_key:
                raise OracleError("OpenAI API key is not configured", reason="auth")
            self._client = OpenAI(
                api_key=self.settings.openai_api_key,
                timeout=self.settings.openai_timeout_secs,
            )
        return self._client

    def _complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: Optional[str] = None,
        json_mode: bool = True,
        temperature: float = 0,
        max_tokens: int = 500,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": model or self.settings.openai_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = self.client.chat.completions.create(**kwargs)
        except RateLimitError as exc:
            code = getattr(exc, "code", None)
            reason = "quota" if code == "insufficient_quota" else "rate_limited"
            raise OracleError("OpenAI request was throttled", reason=reason) from exc
        except AuthenticationError as exc:
            raise OracleError("OpenAI rejected the credentials", reason="auth") from exc
        except APIStatusError as exc:
            raise OracleError(
                f"OpenAI returned status {exc.status_code}", reason="server"
            ) from exc
        except APIConnectionError as exc:
            raise OracleError("Could not reach OpenAI", reason="connection") from exc
        except OpenAIError as exc:
            raise OracleError("OpenAI request failed") from exc

        if not response.choices:
            raise OracleError("OpenAI returned no choices", reason="server")
        return (response.choices[0].message.content or "").strip()

    @staticmethod
    def _load_json(content: str) -> Optional[dict]:
        start, end = content.find("{"), content.rfind("}")
        if start == -1 or end == -1:
            logger.warning("oracle_response_without_json")
            return None
        try:
            data = json.loads(content[start : end + 1])
        except json.JSONDecodeError:
            logger.warning("oracle_response_malformed_json")
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _validate(model: type[BaseModel], data: Optional[dict], marker: str):
        if not data or data.get(marker) is None:
            return None
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            logger.info(f"oracle_result_rejected: model={model.__name__} errors={exc.error_count()}")
            return None

    def parse_transaction(self, text: str) -> Optional[ExtractedTransaction]:
        content = self._complete(
            [
                {"role": "system", "content": TRANSACTION_PROMPT},
                {"role": "user", "content": text},
            ]
        )
        return self._validate(ExtractedTransaction, self._load_json(content), "type")

    def parse_receipt(
        self, image: bytes, mime_type: str = "image/jpeg"
    ) -> Optional[ExtractedReceipt]:
        encoded = base64.b64encode(image).decode("ascii")
        content = self._complete(
            [
                {"role": "system", "content": RECEIPT_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Extract the receipt as JSON."},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
                        },
                    ],
                },
            ],
            model=self.settings.openai_vision_model,
        )
        data = self._load_json(content)
        if data and isinstance(data.get("items"), list):
            data["items"] = [str(item) for item in data["items"] if item]
        return self._validate(ExtractedReceipt, data, "type")

    def parse_goal(self, text: str, today: Optional[date] = None) -> Optional[GoalDraft]:
        today = today or date.today()
        content = self._complete(
            [
                {"role": "system", "content": GOAL_PROMPT.replace("{today}", today.isoformat())},
                {"role": "user", "content": text},
            ]
        )
        return self._validate(GoalDraft, self._load_json(content), "title")

    def summarize_month(self, data: dict) -> str:
        return self._complete(
            [
                {"role": "system", "content": SUMMARY_PROMPT},
                {"role": "user", "content": json.dumps(data, ensure_ascii=False)},
            ],
            json_mode=False,
            temperature=0.7,
        )

    def advise(self, question: str, snapshot: dict) -> str:
        return self._complete(
            [
                {"role": "system", "content": ADVICE_PROMPT},
                {
                    "role": "user",
                    "content": json.dumps(
                        {"question": question, "snapshot": snapshot},
                        ensure_ascii=False,
                    ),
                },
            ],
            json_mode=False,
            temperature=0.5,
        )

    def suggest_savings(self, frequent: list[dict]) -> Optional[str]:
        """Short tip for recurring purchases; None when the model is unavailable."""
        try:
            tip = self._complete(
                [
                    {"role": "system", "content": SAVINGS_PROMPT},
                    {"role": "user", "content": json.dumps(frequent, ensure_ascii=False)},
                ],
                json_mode=False,
                temperature=0.7,
                max_tokens=200,
            )
        except OracleError as exc:
            logger.warning(f"savings_tip_unavailable: reason={exc.reason}")
            return None
        return tip or None
