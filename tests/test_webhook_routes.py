import json

import pytest

from techrehub.config import settings
from techrehub.models import ConversationSession
from techrehub.services.channel_base import compute_signature


def _signed(payload):
    body = json.dumps(payload).encode("utf-8")
    return body, {"Content-Type": "application/json", "X-Hub-Signature-256": compute_signature("app-secret", body)}


def _whatsapp_payload(*messages):
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba",
                "changes": [
                    {"field": "messages", "value": {"messaging_product": "whatsapp", "messages": list(messages)}}
                ],
            }
        ],
    }


def _text(body, sender="263771234567", message_id="wamid.in"):
    return {"from": sender, "id": message_id, "type": "text", "text": {"body": body}}


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestSubscription:
    def test_whatsapp_challenge_is_echoed(self, client, monkeypatch):
        monkeypatch.setattr(settings, "whatsapp_verify_token", "verify-me")
        response = client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
        )
        assert response.status_code == 200
        assert response.text == "12345"

    def test_wrong_token_is_forbidden(self, client, monkeypatch):
        monkeypatch.setattr(settings, "whatsapp_verify_token", "verify-me")
        response = client.get(
            "/webhooks/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "12345"},
        )
        assert response.status_code == 403

    def test_unset_token_is_forbidden(self, client, monkeypatch):
        monkeypatch.setattr(settings, "messenger_verify_token", None)
        response = client.get(
            "/webhooks/messenger",
            params={"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "1"},
        )
        assert response.status_code == 403

    def test_messenger_challenge_is_echoed(self, client, monkeypatch):
        monkeypatch.setattr(settings, "messenger_verify_token", "page-verify")
        response = client.get(
            "/webhooks/messenger",
            params={"hub.mode": "subscribe", "hub.verify_token": "page-verify", "hub.challenge": "abc"},
        )
        assert response.text == "abc"


class TestWhatsAppWebhook:
    def test_bad_signature_is_forbidden(self, client, sent_messages):
        body = json.dumps(_whatsapp_payload(_text("hello"))).encode("utf-8")
        response = client.post(
            "/webhooks/whatsapp",
            content=body,
            headers={"X-Hub-Signature-256": compute_signature("wrong-secret", body)},
        )
        assert response.status_code == 403
        assert sent_messages.requests == []

    def test_missing_signature_is_forbidden(self, client):
        response = client.post("/webhooks/whatsapp", json=_whatsapp_payload(_text("hello")))
        assert response.status_code == 403

    def test_text_message_gets_reply(self, client, sent_messages, db_session):
        body, headers = _signed(_whatsapp_payload(_text("hello")))

        response = client.post("/webhooks/whatsapp", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["processed"] == 1
        assert len(sent_messages.requests) == 1
        assert sent_messages.bodies[0]["to"] == "263771234567"
        session = db_session.query(ConversationSession).one()
        assert session.platform == "whatsapp"

    def test_one_bad_event_does_not_fail_the_batch(self, client, sent_messages):
        broken = {"from": "263770000000", "id": "wamid.bad", "type": "interactive", "interactive": {}}
        body, headers = _signed(_whatsapp_payload(_text("hello"), broken))

        response = client.post("/webhooks/whatsapp", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"success": True, "processed": 1, "failed": 1, "message": None}
        assert [b["to"] for b in sent_messages.bodies] == ["263771234567"]

    def test_media_message_gets_text_only_notice(self, client, sent_messages):
        image = {"from": "263771234567", "id": "wamid.img", "type": "image", "image": {"id": "media-1"}}
        body, headers = _signed(_whatsapp_payload(image))

        response = client.post("/webhooks/whatsapp", content=body, headers=headers)

        assert response.status_code == 200
        assert sent_messages.bodies[0]["text"]["body"] == "I can only process text messages at the moment."

    def test_unknown_button_payload_gets_not_found(self, client, sent_messages):
        button = {
            "from": "263771234567",
            "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": "mystery_button", "title": "?"}},
        }
        body, headers = _signed(_whatsapp_payload(button))

        client.post("/webhooks/whatsapp", content=body, headers=headers)

        assert sent_messages.bodies[0]["text"]["body"] == "Sorry, I couldn't find that. Please try again."

    def test_booking_round_trip(self, client, sent_messages):
        for index, text in enumerate(["Book: John Doe, 25/05/2025, 10:00 AM, Laptop repair", "yes"]):
            body, headers = _signed(_whatsapp_payload(_text(text, message_id=f"wamid.{index}")))
            assert client.post("/webhooks/whatsapp", content=body, headers=headers).status_code == 200

        prompt, confirmation = sent_messages.bodies
        assert prompt["type"] == "interactive"
        assert prompt["interactive"]["action"]["buttons"][0]["reply"]["id"] == "confirm_booking"
        assert "Booking Request Confirmed" in confirmation["interactive"]["body"]["text"]

    def test_foreign_payload_is_acknowledged(self, client, sent_messages):
        body, headers = _signed({"object": "instagram", "entry": []})

        response = client.post("/webhooks/whatsapp", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["message"]
        assert sent_messages.requests == []


class TestMessengerWebhook:
    @pytest.fixture
    def postback(self):
        def build(payload):
            return {
                "object": "page",
                "entry": [
                    {
                        "id": "page-1",
                        "messaging": [
                            {"sender": {"id": "psid-1"}, "postback": {"title": "Services", "payload": payload}}
                        ],
                    }
                ],
            }

        return build

    def test_services_postback_sends_carousel(self, client, sent_messages, postback):
        body, headers = _signed(postback("SHOW_SERVICES"))

        response = client.post("/webhooks/messenger", content=body, headers=headers)

        assert response.status_code == 200
        assert len(sent_messages.requests) == 2
        template = sent_messages.bodies[1]["message"]["attachment"]["payload"]
        assert template["template_type"] == "generic"
        assert sent_messages.requests[0].url.params["access_token"] == "page-token"

    def test_echo_is_not_answered(self, client, sent_messages):
        payload = {
            "object": "page",
            "entry": [{"messaging": [{"sender": {"id": "page-1"}, "message": {"is_echo": True, "text": "hi"}}]}],
        }
        body, headers = _signed(payload)

        response = client.post("/webhooks/messenger", content=body, headers=headers)

        assert response.json()["processed"] == 1
        assert sent_messages.requests == []
