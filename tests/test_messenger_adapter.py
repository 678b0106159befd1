import json
from unittest.mock import AsyncMock

import httpx
import pytest

from techrehub.services.channel_base import compute_signature
from techrehub.services.conversation_engine import confirmation_prompt, help_menu, item_details, product_more_info
from techrehub.services.directives import (
    ActionKind,
    Button,
    CarouselDirective,
    QuickAction,
    QuickRepliesDirective,
    TextDirective,
)
from techrehub.services.errors import NotFoundError, UnrecognizedPayload, UnsupportedMessageType
from techrehub.services.messenger_service import MessengerAdapter, decode_payload, encode_action
from techrehub.services.workflows import DEMO, PRODUCT_QUOTATION

API_URL = "https://graph.facebook.com/v18.0/me/messages"


def _adapter(handler=None, records=None, **overrides):
    options = {
        "page_access_token": "page-token",
        "api_url": API_URL,
        "app_secret": "app-secret",
        "records": records,
        "transport": httpx.MockTransport(handler) if handler else None,
    }
    options.update(overrides)
    return MessengerAdapter(**options)


def _recorder(requests, status_code=200):
    def handler(request):
        requests.append(request)
        if status_code >= 400:
            return httpx.Response(status_code, json={"error": {"message": "invalid token"}})
        return httpx.Response(200, json={"recipient_id": "psid", "message_id": f"m_{len(requests)}"})

    return handler


class TestPayloads:
    @pytest.mark.parametrize(
        "payload,expected",
        [
            ("GET_STARTED", QuickAction(ActionKind.MAIN_MENU)),
            ("SHOW_PRODUCTS", QuickAction(ActionKind.SHOW_PRODUCTS)),
            ("SERVICE_DETAILS_computer-repair", QuickAction(ActionKind.SERVICE_DETAILS, "computer-repair")),
            ("QUOTE_PRODUCT_crm-system", QuickAction(ActionKind.QUOTE_PRODUCT, "crm-system")),
            ("INFO_PRODUCT_analytics-dashboard", QuickAction(ActionKind.PRODUCT_INFO, "analytics-dashboard")),
            ("BOOKING_CONFIRM", QuickAction(ActionKind.CONFIRM, "booking")),
            ("PRODUCT_QUOTE_RETRY", QuickAction(ActionKind.RETRY, "product_quotation")),
            ("DEMO_CONFIRM", QuickAction(ActionKind.CONFIRM, "demo")),
        ],
    )
    def test_decode(self, payload, expected):
        assert decode_payload(payload) == expected

    @pytest.mark.parametrize("payload", ["", "NOPE", "BOOK_SERVICE_", "booking_confirm"])
    def test_unknown_payload_is_not_found(self, payload):
        with pytest.raises(NotFoundError):
            decode_payload(payload)

    def test_main_menu_encodes_without_get_started(self):
        assert encode_action(QuickAction(ActionKind.MAIN_MENU)) == "MAIN_MENU"

    def test_unknown_workflow_cannot_be_encoded(self):
        with pytest.raises(NotFoundError):
            encode_action(QuickAction(ActionKind.CONFIRM, "refund"))

    def test_every_engine_button_survives_encoding(self, catalog):
        product = catalog.get_product("analytics-dashboard")
        directives = [
            help_menu(),
            item_details(catalog.get_service("data-recovery")),
            item_details(product),
            product_more_info(product),
            confirmation_prompt(PRODUCT_QUOTATION, {"company": "ABC"}),
            confirmation_prompt(DEMO, {"name": "Jane"}),
        ]
        for directive in directives:
            for button in directive.buttons:
                assert decode_payload(encode_action(button.action)) == button.action


class TestInbound:
    def test_extract_events(self):
        payload = {
            "object": "page",
            "entry": [
                {"id": "page", "messaging": [{"sender": {"id": "1"}}, {"sender": {"id": "2"}}]},
                {"id": "page", "messaging": [{"sender": {"id": "3"}}]},
            ],
        }
        assert len(_adapter().extract_events(payload)) == 3

    def test_whatsapp_body_is_unrecognized(self):
        with pytest.raises(UnrecognizedPayload):
            _adapter().extract_events({"object": "whatsapp_business_account"})

    def test_text_message(self):
        message = _adapter().normalize_inbound(
            {"sender": {"id": "psid-1"}, "message": {"mid": "m1", "text": "Hello there"}}
        )
        assert message.user_id == "psid-1"
        assert message.platform == "messenger"
        assert message.text == "Hello there"
        assert message.message_id == "m1"

    def test_postback(self):
        message = _adapter().normalize_inbound(
            {"sender": {"id": "psid-1"}, "postback": {"title": "Book Now", "payload": "BOOK_SERVICE_computer-repair"}}
        )
        assert message.is_action
        assert message.payload == "BOOK_SERVICE_computer-repair"

    def test_quick_reply(self):
        message = _adapter().normalize_inbound(
            {
                "sender": {"id": "psid-1"},
                "message": {"mid": "m2", "text": "Yes, Confirm", "quick_reply": {"payload": "BOOKING_CONFIRM"}},
            }
        )
        assert message.payload == "BOOKING_CONFIRM"
        assert message.text == "Yes, Confirm"

    def test_echo_is_ignored(self):
        event = {"sender": {"id": "page"}, "message": {"is_echo": True, "text": "our own reply"}}
        assert _adapter().normalize_inbound(event) is None

    def test_delivery_receipt_is_ignored(self):
        assert _adapter().normalize_inbound({"sender": {"id": "psid-1"}, "delivery": {"mids": ["m1"]}}) is None

    def test_attachment_is_unsupported(self):
        event = {"sender": {"id": "psid-1"}, "message": {"attachments": [{"type": "image"}]}}
        with pytest.raises(UnsupportedMessageType):
            _adapter().normalize_inbound(event)

    def test_missing_sender_is_unrecognized(self):
        with pytest.raises(UnrecognizedPayload):
            _adapter().normalize_inbound({"message": {"text": "hi"}})


class TestSignature:
    def test_valid_signature(self):
        body = b'{"object":"page"}'
        assert _adapter().verify_signature(body, compute_signature("app-secret", body))

    def test_wrong_secret_is_rejected(self):
        body = b'{"object":"page"}'
        assert not _adapter().verify_signature(body, compute_signature("other-secret", body))


class TestOutbound:
    @pytest.mark.asyncio
    async def test_send_text_uses_page_token(self):
        requests = []
        outcome = await _adapter(_recorder(requests)).send_text("psid-1", "Hello")

        assert outcome.ok
        assert outcome.message_id == "m_1"
        assert requests[0].url.params["access_token"] == "page-token"
        body = json.loads(requests[0].content)
        assert body["recipient"] == {"id": "psid-1"}
        assert body["message"] == {"text": "Hello"}

    @pytest.mark.asyncio
    async def test_text_limit(self):
        requests = []
        await _adapter(_recorder(requests)).render("psid-1", TextDirective("z" * 2500))

        text = json.loads(requests[0].content)["message"]["text"]
        assert len(text) == 2000

    @pytest.mark.asyncio
    async def test_quick_replies(self):
        requests = []
        directive = QuickRepliesDirective(
            text="Choose",
            buttons=tuple(Button(f"Option number {i} title", QuickAction(ActionKind.MAIN_MENU)) for i in range(15)),
        )
        await _adapter(_recorder(requests)).render("psid-1", directive)

        replies = json.loads(requests[0].content)["message"]["quick_replies"]
        assert len(replies) == 13
        assert all(len(reply["title"]) <= 20 for reply in replies)
        assert replies[0]["payload"] == "MAIN_MENU"

    @pytest.mark.asyncio
    async def test_carousel_sends_intro_then_template(self, catalog):
        requests = []
        directive = CarouselDirective(kind="products", text="Our products:", items=tuple(catalog.active_products()))
        outcome = await _adapter(_recorder(requests)).render("psid-1", directive)

        assert outcome.ok
        assert len(requests) == 2
        template = json.loads(requests[1].content)["message"]["attachment"]["payload"]
        assert template["template_type"] == "generic"
        elements = template["elements"]
        assert 0 < len(elements) <= 10
        for element in elements:
            assert len(element["title"]) <= 80
            assert len(element["subtitle"]) <= 80
            assert len(element["buttons"]) == 3
        assert elements[0]["buttons"][0]["payload"].startswith("PRODUCT_DETAILS_")

    @pytest.mark.asyncio
    async def test_send_failure_falls_back(self):
        requests = []
        records = AsyncMock()
        outcome = await _adapter(_recorder(requests, status_code=400), records=records).send_text("psid-1", "Hi")

        assert outcome.fallback
        records.store_fallback_message.assert_awaited_once_with(
            platform="messenger",
            recipient="psid-1",
            message="Hi",
            error=outcome.error,
        )

    @pytest.mark.asyncio
    async def test_network_error_falls_back(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        outcome = await _adapter(handler).send_text("psid-1", "Hi")

        assert not outcome.ok
        assert outcome.fallback
        assert "connection refused" in outcome.error
