"""
Tests for the /api/webhook endpoint.

Tests cover:
- GET health check and OPTIONS preflight
- Ignored deliveries (no messages, junk bodies)
- Filtering (self-echo, assistant number, non-text items)
- Sequential dispatch and first-contact greeting
- Per-item failure isolation and the 500 path
"""

import pytest
from fastapi.testclient import TestClient

from concierge.main import create_app
from concierge.models import WhatsAppSession
from concierge.result import Result

GREETING = "السلام عليكم لالة"
CHAT_ID = "213555123456@s.whatsapp.net"


def text_item(chat_id: str, body: str, from_me: bool = False, **extra) -> dict:
    return {"from_me": from_me, "chat_id": chat_id, "text": {"body": body}, **extra}


def session_count(app) -> int:
    with app.state.session_factory() as db:
        return db.query(WhatsAppSession).count()


class TestWebhookMethods:

    def test_get_reports_active(self, client):
        """GET reports the webhook as active."""
        response = client.get("/api/webhook")

        assert response.status_code == 200
        assert response.json()["status"] == "active"

    def test_options_returns_cors_headers(self, client):
        """OPTIONS answers 200 with CORS headers and no body."""
        response = client.options("/api/webhook")

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.content == b""

    def test_options_follows_configured_origins(self, settings, fake_generator, fake_transport):
        """OPTIONS only allows origins listed in CORS_ALLOW_ORIGINS."""
        settings.CORS_ALLOW_ORIGINS = "https://admin.example.com"
        app = create_app(settings, generator=fake_generator, transport=fake_transport)

        with TestClient(app) as client:
            allowed = client.options("/api/webhook", headers={"Origin": "https://admin.example.com"})
            other = client.options("/api/webhook", headers={"Origin": "https://evil.example.com"})
            bare = client.options("/api/webhook")

        assert allowed.status_code == 200
        assert allowed.headers["access-control-allow-origin"] == "https://admin.example.com"
        assert other.status_code == 200
        assert "access-control-allow-origin" not in other.headers
        assert "access-control-allow-origin" not in bare.headers
        assert bare.headers["access-control-allow-methods"] == "GET,OPTIONS,POST"

    @pytest.mark.parametrize("method", ["put", "delete", "patch"])
    def test_other_methods_not_allowed(self, client, method):
        """Methods other than GET, POST and OPTIONS get 405."""
        response = getattr(client, method)("/api/webhook")
        assert response.status_code == 405

    def test_response_includes_request_id_header(self, client):
        """Every response carries an X-Request-ID header."""
        response = client.get("/api/webhook")
        assert "x-request-id" in response.headers


class TestIgnoredDeliveries:

    def test_missing_messages_key(self, client, app, fake_transport):
        """A delivery without messages is ignored and touches nothing."""
        response = client.post("/api/webhook", json={})

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}
        assert session_count(app) == 0
        assert fake_transport.sent == []

    def test_empty_messages_list(self, client):
        """An empty messages list is ignored."""
        response = client.post("/api/webhook", json={"messages": []})
        assert response.json() == {"status": "ignored"}

    def test_status_callback(self, client):
        """Status callbacks are ignored."""
        response = client.post("/api/webhook", json={"statuses": [{"id": "x", "status": "read"}]})
        assert response.json() == {"status": "ignored"}

    def test_non_json_body(self, client):
        """A body that is not JSON is ignored, not rejected."""
        response = client.post("/api/webhook", content=b"not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}

    def test_messages_not_a_list(self, client):
        """A messages field that is not a list is ignored."""
        response = client.post("/api/webhook", json={"messages": "hello"})
        assert response.json() == {"status": "ignored"}


class TestFiltering:

    def test_self_echo_suppressed(self, client, app, fake_transport, fake_generator):
        """Our own outbound messages are filtered without any side effect."""
        response = client.post(
            "/api/webhook",
            json={"messages": [text_item(CHAT_ID, "our own reply", from_me=True)]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["processed"] == 0
        assert body["filtered"] == 1
        assert fake_transport.sent == []
        assert fake_generator.contexts == []
        assert session_count(app) == 0

    def test_assistant_number_suppressed(self, client, fake_transport):
        """Items sent from the assistant number are filtered."""
        item = text_item(CHAT_ID, "echo", **{"from": "213550000000"})
        response = client.post("/api/webhook", json={"messages": [item]})

        assert response.json()["filtered"] == 1
        assert fake_transport.sent == []

    def test_items_without_text_or_chat_are_dropped(self, client, fake_transport):
        """Non-text, chat-less, blank and malformed items are filtered."""
        items = [
            {"from_me": False, "chat_id": CHAT_ID, "type": "image", "image": {"id": "img"}},
            {"from_me": False, "text": {"body": "no chat id"}},
            text_item(CHAT_ID, "   "),
            "garbage",
        ]
        response = client.post("/api/webhook", json={"messages": items})

        body = response.json()
        assert body["status"] == "success"
        assert body["filtered"] == 4
        assert fake_transport.sent == []


class TestDispatch:

    def test_first_contact_then_follow_up(self, client, app, fake_transport):
        """The first message is greeted, the follow-up is not."""
        first = client.post("/api/webhook", json={"messages": [text_item(CHAT_ID, "hello")]})

        assert first.status_code == 200
        assert first.json() == {"status": "success", "processed": 1, "filtered": 0, "failed": 0}
        assert fake_transport.sent[0][0] == CHAT_ID
        assert GREETING in fake_transport.sent[0][1]

        session = client.get("/sessions/555123456").json()
        assert session["message_count"] == 1

        client.post("/api/webhook", json={"messages": [text_item(CHAT_ID, "book me for friday")]})
        assert GREETING not in fake_transport.sent[1][1]
        assert session_count(app) == 1

    def test_items_processed_in_order(self, client, fake_transport, fake_generator):
        """Items of one delivery are answered sequentially in array order."""
        items = [text_item(CHAT_ID, "first"), text_item(CHAT_ID, "second"), text_item(CHAT_ID, "third")]

        response = client.post("/api/webhook", json={"messages": items})

        assert response.json()["processed"] == 3
        assert [c.inbound_text for c in fake_generator.contexts] == ["first", "second", "third"]
        assert [c.is_first_contact for c in fake_generator.contexts] == [True, False, False]
        assert [text for _, text in fake_transport.sent][1:] == ["reply to: second", "reply to: third"]

    def test_mixed_batch(self, client, fake_transport):
        """Filtered and answered items are counted separately in one delivery."""
        items = [
            text_item(CHAT_ID, "hello"),
            text_item(CHAT_ID, "echo", from_me=True),
            text_item("213666777888@s.whatsapp.net", "salam"),
        ]
        response = client.post("/api/webhook", json={"messages": items})

        assert response.json() == {"status": "success", "processed": 2, "filtered": 1, "failed": 0}
        assert [phone for phone, _ in fake_transport.sent] == [CHAT_ID, "213666777888@s.whatsapp.net"]


class ExplodingTransport:
    """Transport whose send raises for one chat and succeeds for the rest."""

    def __init__(self, failing_chat_id: str):
        self.failing_chat_id = failing_chat_id
        self.sent = []

    def send_text(self, phone, text):
        if phone == self.failing_chat_id:
            raise RuntimeError("gateway exploded")
        self.sent.append((phone, text))
        return {"sent": True}


class TestFailures:

    def test_failed_item_does_not_block_siblings(self, client, fake_generator, fake_transport):
        """A generation failure for one item still lets the next item be answered."""
        original = fake_generator.generate

        def flaky(context):
            if context.inbound_text == "boom":
                fake_generator.contexts.append(context)
                return Result.failure("generator down", "ai_error")
            return original(context)

        fake_generator.generate = flaky
        items = [text_item(CHAT_ID, "boom"), text_item("213666777888@s.whatsapp.net", "salam")]

        response = client.post("/api/webhook", json={"messages": items})

        assert response.status_code == 200
        assert response.json() == {"status": "success", "processed": 1, "filtered": 0, "failed": 1}
        assert len(fake_transport.sent) == 1

    def test_failed_send_does_not_block_siblings(self, settings, fake_generator):
        """A send that raises for one item is counted as failed and the next item is still sent."""
        other_chat = "213666777888@s.whatsapp.net"
        transport = ExplodingTransport(failing_chat_id=CHAT_ID)
        app = create_app(settings, generator=fake_generator, transport=transport)

        with TestClient(app) as client:
            items = [text_item(CHAT_ID, "hello"), text_item(other_chat, "salam")]
            response = client.post("/api/webhook", json={"messages": items})

        assert response.status_code == 200
        assert response.json() == {"status": "success", "processed": 1, "filtered": 0, "failed": 1}
        assert [phone for phone, _ in transport.sent] == [other_chat]

    def test_failure_aborts_delivery_when_not_isolated(self, settings, fake_generator, fake_transport):
        """With isolation off, a failed reply turns the delivery into a 500."""
        settings.ISOLATE_ITEM_FAILURES = False
        fake_generator.fail_with = "generator down"
        app = create_app(settings, generator=fake_generator, transport=fake_transport)

        with TestClient(app) as client:
            response = client.post("/api/webhook", json={"messages": [text_item(CHAT_ID, "hello")]})

        assert response.status_code == 500
        body = response.json()
        assert body["status"] == "error"
        assert "ai_error" in body["message"]

    def test_send_exception_returns_500_when_not_isolated(self, settings, fake_generator):
        """With isolation off, a send that raises aborts the delivery with its message."""
        settings.ISOLATE_ITEM_FAILURES = False
        transport = ExplodingTransport(failing_chat_id=CHAT_ID)
        app = create_app(settings, generator=fake_generator, transport=transport)

        with TestClient(app, raise_server_exceptions=False) as client:
            items = [text_item(CHAT_ID, "hello"), text_item("213666777888@s.whatsapp.net", "salam")]
            response = client.post("/api/webhook", json={"messages": items})

        assert response.status_code == 500
        assert response.json() == {"status": "error", "message": "gateway exploded"}
        assert transport.sent == []
