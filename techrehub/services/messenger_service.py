"""Facebook Messenger Send API adapter."""

from __future__ import annotations

from typing import Optional

import httpx

from techrehub.logging_config import get_logger
from techrehub.services.channel_base import ChannelAdapter, InboundMessage, truncate
from techrehub.services.delivery import DeliveryOutcome
from techrehub.services.directives import (
    ActionKind,
    Button,
    CarouselDirective,
    ConfirmationPrompt,
    Directive,
    QuickAction,
    QuickRepliesDirective,
    directive_text,
)
from techrehub.services.errors import NotFoundError, UnrecognizedPayload, UnsupportedMessageType
from techrehub.services.record_service import RecordService

logger = get_logger("messenger_service")

UNSUPPORTED_MESSAGE_TEXT = "I can only process text messages at the moment."

TEXT_LIMIT = 2000
ELEMENT_TEXT_LIMIT = 80
BUTTON_TITLE_LIMIT = 20
QUICK_REPLY_TITLE_LIMIT = 20
MAX_ELEMENTS = 10
MAX_ELEMENT_BUTTONS = 3
MAX_QUICK_REPLIES = 13

_FIXED_PAYLOADS = {
    "SHOW_SERVICES": QuickAction(ActionKind.SHOW_SERVICES),
    "SHOW_PRODUCTS": QuickAction(ActionKind.SHOW_PRODUCTS),
    "HUMAN_TRANSFER": QuickAction(ActionKind.HUMAN_TRANSFER),
    "MAIN_MENU": QuickAction(ActionKind.MAIN_MENU),
    "GET_STARTED": QuickAction(ActionKind.MAIN_MENU),
    "HELP_MENU": QuickAction(ActionKind.HELP_MENU),
    "SCHEDULE_DEMO": QuickAction(ActionKind.SCHEDULE_DEMO),
}

_WORKFLOW_PAYLOADS = {
    "booking": "BOOKING",
    "quotation": "QUOTE",
    "product_quotation": "PRODUCT_QUOTE",
    "demo": "DEMO",
}

_PREFIXES = (
    ("SERVICE_DETAILS_", ActionKind.SERVICE_DETAILS),
    ("PRODUCT_DETAILS_", ActionKind.PRODUCT_DETAILS),
    ("BOOK_SERVICE_", ActionKind.BOOK_SERVICE),
    ("QUOTE_SERVICE_", ActionKind.QUOTE_SERVICE),
    ("QUOTE_PRODUCT_", ActionKind.QUOTE_PRODUCT),
    ("DEMO_PRODUCT_", ActionKind.DEMO_PRODUCT),
    ("INFO_PRODUCT_", ActionKind.PRODUCT_INFO),
)


def decode_payload(payload: str) -> QuickAction:
    value = (payload or "").strip()
    if value in _FIXED_PAYLOADS:
        return _FIXED_PAYLOADS[value]
    for workflow, stem in _WORKFLOW_PAYLOADS.items():
        if value == f"{stem}_CONFIRM":
            return QuickAction(ActionKind.CONFIRM, workflow)
        if value == f"{stem}_RETRY":
            return QuickAction(ActionKind.RETRY, workflow)
    for prefix, kind in _PREFIXES:
        if value.startswith(prefix) and len(value) > len(prefix):
            return QuickAction(kind, value[len(prefix) :])
    raise NotFoundError(f"Unknown Messenger payload: {payload}")


def encode_action(action: QuickAction) -> str:
    for payload, fixed in _FIXED_PAYLOADS.items():
        if fixed == action and payload != "GET_STARTED":
            return payload
    if action.kind in (ActionKind.CONFIRM, ActionKind.RETRY):
        stem = _WORKFLOW_PAYLOADS.get(action.target or "")
        if stem is None:
            raise NotFoundError(f"Unknown workflow: {action.target}")
        return f"{stem}_{'CONFIRM' if action.kind == ActionKind.CONFIRM else 'RETRY'}"
    for prefix, kind in _PREFIXES:
        if kind == action.kind:
            return f"{prefix}{action.target}"
    raise NotFoundError(f"Action has no Messenger encoding: {action.kind}")


class MessengerAdapter(ChannelAdapter):
    platform = "messenger"

    def __init__(
        self,
        *,
        page_access_token: Optional[str],
        api_url: str,
        app_secret: Optional[str],
        signature_required: bool = True,
        timeout: float = 15.0,
        records: Optional[RecordService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            app_secret=app_secret,
            signature_required=signature_required,
            timeout=timeout,
            records=records,
            transport=transport,
        )
        self.page_access_token = page_access_token
        self.api_url = api_url

    @property
    def configured(self) -> bool:
        return bool(self.page_access_token)

    # Inbound

    def extract_events(self, payload: dict) -> list[dict]:
        if not isinstance(payload, dict) or payload.get("object") != "page":
            raise UnrecognizedPayload("Not a Messenger page webhook")
        events = []
        for entry in payload.get("entry") or []:
            events.extend(entry.get("messaging") or [])
        return events

    def normalize_inbound(self, event: dict) -> Optional[InboundMessage]:
        sender = (event.get("sender") or {}).get("id")
        if not sender:
            raise UnrecognizedPayload("Messenger event without sender")

        postback = event.get("postback")
        if postback:
            return InboundMessage(
                user_id=sender,
                platform=self.platform,
                text=postback.get("title") or "",
                message_id=postback.get("mid"),
                payload=postback.get("payload"),
            )

        message = event.get("message")
        if not message or message.get("is_echo"):
            return None

        quick_reply = message.get("quick_reply") or {}
        if quick_reply.get("payload"):
            return InboundMessage(
                user_id=sender,
                platform=self.platform,
                text=message.get("text") or "",
                message_id=message.get("mid"),
                payload=quick_reply["payload"],
            )

        text = (message.get("text") or "").strip()
        if text:
            return InboundMessage(user_id=sender, platform=self.platform, text=text, message_id=message.get("mid"))
        if message.get("attachments"):
            raise UnsupportedMessageType(UNSUPPORTED_MESSAGE_TEXT, sender)
        return None

    def decode_payload(self, payload: str) -> QuickAction:
        return decode_payload(payload)

    def encode_action(self, action: QuickAction) -> str:
        return encode_action(action)

    # Outbound

    def _message_id(self, data: dict) -> Optional[str]:
        return data.get("message_id")

    async def _send(self, user_id: str, message: dict, text: str) -> DeliveryOutcome:
        payload = {"recipient": {"id": user_id}, "messaging_type": "RESPONSE", "message": message}
        return await self._post(
            self.api_url,
            payload,
            user_id=user_id,
            text=text,
            params={"access_token": self.page_access_token},
        )

    async def send_text(self, user_id: str, text: str) -> DeliveryOutcome:
        body = truncate(text, TEXT_LIMIT)
        if not body:
            return DeliveryOutcome.nothing_to_send()
        return await self._send(user_id, {"text": body}, body)

    async def send_quick_replies(self, user_id: str, text: str, buttons: list[Button]) -> DeliveryOutcome:
        body = truncate(text, TEXT_LIMIT)
        replies = [
            {
                "content_type": "text",
                "title": truncate(button.title, QUICK_REPLY_TITLE_LIMIT),
                "payload": self.encode_action(button.action),
            }
            for button in buttons[:MAX_QUICK_REPLIES]
        ]
        return await self._send(user_id, {"text": body, "quick_replies": replies}, body)

    def _element(self, item, kind: str) -> dict:
        if kind == "services":
            buttons = [
                ("View Details", QuickAction(ActionKind.SERVICE_DETAILS, item.id)),
                ("Book Now", QuickAction(ActionKind.BOOK_SERVICE, item.id)),
                ("Get Quote", QuickAction(ActionKind.QUOTE_SERVICE, item.id)),
            ]
        else:
            buttons = [
                ("View Details", QuickAction(ActionKind.PRODUCT_DETAILS, item.id)),
                ("Request Demo", QuickAction(ActionKind.DEMO_PRODUCT, item.id)),
                ("Get Quote", QuickAction(ActionKind.QUOTE_PRODUCT, item.id)),
            ]
        element = {
            "title": truncate(item.name, ELEMENT_TEXT_LIMIT),
            "subtitle": truncate(f"{item.description} {item.summary}", ELEMENT_TEXT_LIMIT),
            "buttons": [
                {"type": "postback", "title": truncate(title, BUTTON_TITLE_LIMIT), "payload": self.encode_action(action)}
                for title, action in buttons[:MAX_ELEMENT_BUTTONS]
            ],
        }
        if item.image:
            element["image_url"] = item.image
        return element

    async def send_carousel(self, user_id: str, directive: CarouselDirective) -> DeliveryOutcome:
        elements = [self._element(item, directive.kind) for item in directive.items[:MAX_ELEMENTS]]
        if not elements:
            return await self.send_text(user_id, directive.text)
        outcomes = [await self.send_text(user_id, directive.text)]
        message = {
            "attachment": {
                "type": "template",
                "payload": {"template_type": "generic", "elements": elements},
            }
        }
        outcomes.append(await self._send(user_id, message, directive.text))
        return DeliveryOutcome.combine(outcomes)

    async def _render(self, user_id: str, directive: Directive) -> DeliveryOutcome:
        if isinstance(directive, CarouselDirective):
            return await self.send_carousel(user_id, directive)
        if isinstance(directive, (QuickRepliesDirective, ConfirmationPrompt)) and directive.buttons:
            return await self.send_quick_replies(user_id, directive.text, list(directive.buttons))
        return await self.send_text(user_id, directive_text(directive))
