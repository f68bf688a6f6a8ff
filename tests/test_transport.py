import base64
import socket
import threading

import pytest

import transport as transport_module
from conftest import make_settings
from models import TransactionSource
from transport import (
    CloudApiTransport,
    InboundMessage,
    TransportError,
    WebBridgeTransport,
    build_transport,
)


def _cloud(**overrides):
    settings = dict(
        whatsapp_api_version="v21.0",
        whatsapp_access_token="access",
        whatsapp_phone_number_id="1234",
        whatsapp_verify_token="verify-me",
    )
    settings.update(overrides)
    return CloudApiTransport(make_settings(**settings))


def _bridge(**overrides):
    settings = dict(
        bridge_url="http://bridge.local",
        bridge_token=None,
        allowed_sender=None,
    )
    settings.update(overrides)
    return WebBridgeTransport(make_settings(**settings))


@pytest.fixture
def http_calls(monkeypatch):
    calls = []
    responses = []

    def fake_http(url, *, payload=None, headers=None, timeout, raw=False):
        calls.append({"url": url, "payload": payload, "headers": headers or {}, "raw": raw})
        if responses:
            result = responses.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return {}

    monkeypatch.setattr(transport_module, "_http", fake_http)
    return calls, responses


def _cloud_payload(*messages, field="messages"):
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba",
                "changes": [{"field": field, "value": {"messages": list(messages)}}],
            }
        ],
    }


def test_cloud_parses_text_and_image_messages() -> None:
    payload = _cloud_payload(
        {"from": "972500000001", "id": "wamid.1", "type": "text", "text": {"body": " coffee 18 "}},
        {
            "from": "972500000001",
            "id": "wamid.2",
            "type": "image",
            "image": {"id": "media-7", "mime_type": "image/png", "caption": "lunch"},
        },
        {"from": "972500000001", "id": "wamid.3", "type": "sticker", "sticker": {}},
    )

    messages = _cloud().parse_inbound(payload)

    assert messages == [
        InboundMessage(
            sender_id="972500000001", kind="text", text="coffee 18", message_id="wamid.1"
        ),
        InboundMessage(
            sender_id="972500000001",
            kind="image",
            text="lunch",
            media_id="media-7",
            mime_type="image/png",
            message_id="wamid.2",
        ),
    ]


def test_cloud_ignores_foreign_objects_and_status_updates() -> None:
    cloud = _cloud()
    assert cloud.parse_inbound({"object": "page", "entry": []}) == []
    status_only = {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"field": "messages", "value": {"statuses": [{"id": "x"}]}}]}],
    }
    assert cloud.parse_inbound(status_only) == []


def test_cloud_handshake() -> None:
    cloud = _cloud()
    assert cloud.verify_handshake("subscribe", "verify-me", "42") == "42"
    assert cloud.verify_handshake("subscribe", "nope", "42") is None
    assert cloud.verify_handshake("unsubscribe", "verify-me", "42") is None
    assert _cloud(whatsapp_verify_token=None).verify_handshake("subscribe", "", "42") is None


def test_cloud_send_posts_text_message(http_calls) -> None:
    calls, _ = http_calls

    assert _cloud().send("972500000001", "hello") is True

    call = calls[0]
    assert call["url"] == "https://graph.facebook.com/v21.0/1234/messages"
    assert call["headers"]["Authorization"] == "Bearer access"
    assert call["payload"]["to"] == "972500000001"
    assert call["payload"]["text"]["body"] == "hello"


def test_send_reports_delivery_failure(http_calls) -> None:
    calls, responses = http_calls
    responses.append(TransportError("HTTP 500"))

    assert _cloud().send("972500000001", "hello") is False
    assert _cloud(whatsapp_phone_number_id=None).send("972500000001", "hello") is False
    assert len(calls) == 1


def test_cloud_load_image_follows_media_url(http_calls) -> None:
    calls, responses = http_calls
    responses.extend(
        [{"url": "https://lookaside.example/media-7", "mime_type": "image/webp"}, b"bytes"]
    )
    message = InboundMessage(sender_id="1", kind="image", media_id="media-7")

    assert _cloud().load_image(message) == b"bytes"
    assert message.mime_type == "image/webp"
    assert calls[0]["url"] == "https://graph.facebook.com/v21.0/media-7"
    assert calls[1]["raw"] is True


def test_bridge_filters_inbound_events() -> None:
    bridge = _bridge(allowed_sender="+972-50-000-0001")
    events = {
        "messages": [
            {"from": "972500000001@c.us", "body": "bought bread 12", "id": "a"},
            {"from": "972500000001@c.us", "body": "sent by me", "fromMe": True},
            {"from": "12036302@g.us", "body": "group chatter"},
            {"from": "972599999999@c.us", "body": "stranger"},
            {"from": "972500000001@c.us", "body": "k"},
            {
                "from": "972500000001@c.us",
                "body": "",
                "hasMedia": True,
                "mimetype": "audio/ogg",
                "mediaData": base64.b64encode(b"voice").decode(),
            },
        ]
    }

    messages = bridge.parse_inbound(events)

    assert messages == [
        InboundMessage(sender_id="972500000001", kind="text", text="bought bread 12", message_id="a")
    ]


def test_bridge_decodes_inline_images() -> None:
    bridge = _bridge()
    event = {
        "from": "972500000001@c.us",
        "hasMedia": True,
        "mimetype": "image/jpeg",
        "mediaData": base64.b64encode(b"\xff\xd8jpeg").decode(),
    }

    (message,) = bridge.parse_inbound(event)

    assert message.kind == "image"
    assert bridge.load_image(message) == b"\xff\xd8jpeg"
    assert bridge.parse_inbound({**event, "mediaData": "***"}) == []


def test_bridge_send_and_token(http_calls) -> None:
    calls, _ = http_calls
    bridge = _bridge(bridge_token="tok")

    assert bridge.send("972500000001", "hi") is True
    assert calls[0]["url"] == "http://bridge.local/send"
    assert calls[0]["payload"] == {"to": "972500000001@c.us", "text": "hi"}
    assert calls[0]["headers"]["X-Bridge-Token"] == "tok"

    assert bridge.verify_token("tok") is True
    assert bridge.verify_token("other") is False
    assert bridge.verify_token(None) is False
    assert _bridge().verify_token(None) is True


def test_build_transport_and_sources() -> None:
    cloud = build_transport(make_settings(transport="cloud"))
    web = build_transport(make_settings(transport="web"))
    assert isinstance(cloud, CloudApiTransport)
    assert isinstance(web, WebBridgeTransport)
    assert cloud.chat_source == TransactionSource.cloud_chat
    assert web.receipt_source == TransactionSource.web_chat_receipt


def test_bridge_refuses_cloud_handshake() -> None:
    assert _bridge().verify_handshake("subscribe", None, "42") is None
    assert _bridge(bridge_token="tok").verify_handshake("subscribe", "tok", "42") is None


@pytest.fixture
def dropping_server():
    """Accepts one request per connection and hangs up without answering."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen()
    listener.settimeout(5)
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except OSError:
                return
            with conn:
                conn.recv(65536)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    host, port = listener.getsockname()
    yield f"http://{host}:{port}"
    stop.set()
    listener.close()
    thread.join(timeout=5)


def test_send_survives_dropped_connection(dropping_server) -> None:
    bridge = _bridge(bridge_url=dropping_server, http_timeout_secs=2)

    assert bridge.send("972500000001", "hello") is False


def test_http_wraps_dropped_connection(dropping_server) -> None:
    with pytest.raises(TransportError):
        transport_module._http(f"{dropping_server}/send", payload={"to": "x"}, timeout=2)
