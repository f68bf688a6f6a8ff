from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from http.client import HTTPException
from typing import Any, Optional
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from config import Settings, get_settings
from models import TransactionSource

logger = logging.getLogger(__name__)

GRAPH_API_ROOT = "https://graph.facebook.com"


class TransportError(RuntimeError):
    pass


@dataclass
class InboundMessage:
    sender_id: str
    kind: str  # "text" or "image"
    text: str = ""
    media_id: Optional[str] = None
    media_data: Optional[bytes] = None
    mime_type: Optional[str] = None
    message_id: Optional[str] = None


def _http(
    url: str,
    *,
    payload: Optional[dict] = None,
    headers: Optional[dict[str, str]] = None,
    timeout: float,
    raw: bool = False,
) -> Any:
    data = None
    all_headers = {"Accept": "application/json"}
    all_headers.update(headers or {})
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        all_headers["Content-Type"] = "application/json"
    req = Request(url, data=data, headers=all_headers)
    try:
        with urlopen(req, timeout=timeout) as resp:
            body = resp.read()
    except HTTPError as exc:
        raise TransportError(f"{url} answered HTTP {exc.code}") from exc
    except (OSError, HTTPException) as exc:
        # URLError, timeouts, resets and dropped connections
        raise TransportError(f"Failed to reach {url}: {exc}") from exc
    if raw:
        return body
    if not body:
        return {}
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TransportError(f"Unexpected response from {url}") from exc


class Transport(ABC):
    """One chat channel: inbound normalization plus outbound text."""

    name: str = "transport"
    chat_source: TransactionSource = TransactionSource.manual
    receipt_source: TransactionSource = TransactionSource.manual

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    @abstractmethod
    def parse_inbound(self, payload: dict) -> list[InboundMessage]: ...

    @abstractmethod
    def _deliver(self, recipient: str, text: str) -> None: ...

    @abstractmethod
    def load_image(self, message: InboundMessage) -> bytes: ...

    @abstractmethod
    def verify_token(self, token: Optional[str]) -> bool: ...

    def send(self, recipient: str, text: str) -> bool:
        try:
            self._deliver(recipient, text)
        except TransportError as exc:
            logger.warning(f"send_failed: transport={self.name} to={recipient} error={exc}")
            return False
        logger.info(f"send_ok: transport={self.name} to={recipient} chars={len(text)}")
        return True

    def verify_handshake(
        self, mode: Optional[str], token: Optional[str], challenge: Optional[str]
    ) -> Optional[str]:
        if mode == "subscribe" and challenge is not None and self.verify_token(token):
            return challenge
        return None

    def close(self) -> None:
        logger.info(f"transport_closed: {self.name}")


class CloudApiTransport(Transport):
    """WhatsApp Business Cloud API (Graph API webhooks)."""

    name = "cloud"
    chat_source = TransactionSource.cloud_chat
    receipt_source = TransactionSource.cloud_chat_receipt

    @property
    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.whatsapp_access_token}"}

    @property
    def _base_url(self) -> str:
        return f"{GRAPH_API_ROOT}/{self.settings.whatsapp_api_version}"

    def verify_token(self, token: Optional[str]) -> bool:
        expected = self.settings.whatsapp_verify_token
        if not expected or not token:
            return False
        return hmac.compare_digest(expected, token)

    def parse_inbound(self, payload: dict) -> list[InboundMessage]:
        if payload.get("object") != "whatsapp_business_account":
            return []
        messages: list[InboundMessage] = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                if change.get("field") not in (None, "messages"):
                    continue
                value = change.get("value") or {}
                for raw in value.get("messages") or []:
                    message = self._normalize(raw)
                    if message:
                        messages.append(message)
        return messages

    @staticmethod
    def _normalize(raw: dict) -> Optional[InboundMessage]:
        sender = str(raw.get("from") or "").strip()
        kind = raw.get("type")
        if not sender:
            return None
        if kind == "text":
            body = ((raw.get("text") or {}).get("body") or "").strip()
            if not body:
                return None
            return InboundMessage(
                sender_id=sender, kind="text", text=body, message_id=raw.get("id")
            )
        if kind == "image":
            image = raw.get("image") or {}
            if not image.get("id"):
                return None
            return InboundMessage(
                sender_id=sender,
                kind="image",
                text=(image.get("caption") or "").strip(),
                media_id=image["id"],
                mime_type=image.get("mime_type") or "image/jpeg",
                message_id=raw.get("id"),
            )
        logger.info(f"inbound_skipped: transport=cloud type={kind}")
        return None

    def _deliver(self, recipient: str, text: str) -> None:
        if not self.settings.whatsapp_phone_number_id:
            raise TransportError("WhatsApp phone number id is not configured")
        url = f"{self._base_url}/{self.settings.whatsapp_phone_number_id}/messages"
        _http(
            url,
            payload={
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": recipient,
                "type": "text",
                "text": {"preview_url": False, "body": text},
            },
            headers=self._auth,
            timeout=self.settings.http_timeout_secs,
        )

    def load_image(self, message: InboundMessage) -> bytes:
        if not message.media_id:
            raise TransportError("Message has no media")
        meta = _http(
            f"{self._base_url}/{message.media_id}",
            headers=self._auth,
            timeout=self.settings.http_timeout_secs,
        )
        url = meta.get("url") if isinstance(meta, dict) else None
        if not url:
            raise TransportError(f"No download url for media {message.media_id}")
        if meta.get("mime_type"):
            message.mime_type = meta["mime_type"]
        return _http(
            url, headers=self._auth, timeout=self.settings.http_timeout_secs, raw=True
        )


class WebBridgeTransport(Transport):
    """WhatsApp Web session driven by a local browser-automation bridge."""

    name = "web"
    chat_source = TransactionSource.web_chat
    receipt_source = TransactionSource.web_chat_receipt

    def verify_token(self, token: Optional[str]) -> bool:
        expected = self.settings.bridge_token
        if not expected:
            return True
        return bool(token) and hmac.compare_digest(expected, token)

    def verify_handshake(
        self, mode: Optional[str], token: Optional[str], challenge: Optional[str]
    ) -> Optional[str]:
        # The Cloud subscription handshake has no bridge equivalent.
        return None

    @staticmethod
    def _phone(chat_id: str) -> str:
        return chat_id.split("@", 1)[0]

    def _allowed(self, sender: str) -> bool:
        allowed = self.settings.allowed_sender
        if not allowed:
            return True
        digits = "".join(ch for ch in allowed if ch.isdigit())
        return self._phone(sender) == digits

    def parse_inbound(self, payload: dict) -> list[InboundMessage]:
        events = payload.get("messages")
        if events is None:
            events = [payload]
        messages: list[InboundMessage] = []
        for raw in events:
            message = self._normalize(raw or {})
            if message:
                messages.append(message)
        return messages

    def _normalize(self, raw: dict) -> Optional[InboundMessage]:
        chat_id = str(raw.get("from") or "")
        if not chat_id or raw.get("fromMe"):
            return None
        if chat_id.endswith("@g.us"):
            return None
        if not self._allowed(chat_id):
            logger.info(f"inbound_skipped: transport=web sender={chat_id} not allowed")
            return None

        sender = self._phone(chat_id)
        body = (raw.get("body") or "").strip()
        if raw.get("hasMedia"):
            mime_type = raw.get("mimetype") or ""
            if not mime_type.startswith("image/") or not raw.get("mediaData"):
                return None
            try:
                data = base64.b64decode(raw["mediaData"], validate=True)
            except (binascii.Error, ValueError):
                logger.warning(f"inbound_skipped: transport=web bad media from={sender}")
                return None
            return InboundMessage(
                sender_id=sender,
                kind="image",
                text=body,
                media_data=data,
                mime_type=mime_type,
                message_id=raw.get("id"),
            )
        if len(body) < 2:
            return None
        return InboundMessage(
            sender_id=sender, kind="text", text=body, message_id=raw.get("id")
        )

    def _deliver(self, recipient: str, text: str) -> None:
        chat_id = recipient if "@" in recipient else f"{recipient}@c.us"
        headers = {}
        if self.settings.bridge_token:
            headers["X-Bridge-Token"] = self.settings.bridge_token
        _http(
            f"{self.settings.bridge_url}/send",
            payload={"to": chat_id, "text": text},
            headers=headers,
            timeout=self.settings.http_timeout_secs,
        )

    def load_image(self, message: InboundMessage) -> bytes:
        if message.media_data is None:
            raise TransportError("Bridge message carried no media")
        return message.media_data


def build_transport(settings: Optional[Settings] = None) -> Transport:
    settings = settings or get_settings()
    if settings.transport == "cloud":
        return CloudApiTransport(settings)
    return WebBridgeTransport(settings)
