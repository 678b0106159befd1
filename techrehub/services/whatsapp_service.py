"""WhatsApp Cloud API adapter."""

from __future__ import annotations

import re
from typing import Optional

import httpx

from techrehub.logging_config import get_logger
from techrehub.services.catalog import Catalog, CatalogItem
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

logger = get_logger("whatsapp_service")

UNSUPPORTED_MESSAGE_TEXT = "I can only process text messages at the moment."

TEXT_LIMIT = 4096
BODY_LIMIT = 1024
BUTTON_TITLE_LIMIT = 20
LIST_BUTTON_LIMIT = 20
ROW_TITLE_LIMIT = 24
ROW_DESCRIPTION_LIMIT = 72
SECTION_TITLE_LIMIT = 24
MAX_BUTTONS = 3
MAX_LIST_ROWS = 10

_FIXED_PAYLOADS = {
    "back_services": QuickAction(ActionKind.SHOW_SERVICES),
    "show_services": QuickAction(ActionKind.SHOW_SERVICES),
    "back_products": QuickAction(ActionKind.SHOW_PRODUCTS),
    "show_products": QuickAction(ActionKind.SHOW_PRODUCTS),
    "human_transfer": QuickAction(ActionKind.HUMAN_TRANSFER),
    "main_menu": QuickAction(ActionKind.MAIN_MENU),
    "help_menu": QuickAction(ActionKind.HELP_MENU),
    "schedule_demo": QuickAction(ActionKind.SCHEDULE_DEMO),
}

# Longest prefixes first: "quote_product_" must win over "quote_" and "product_".
_PREFIXES = (
    ("quote_product_", ActionKind.QUOTE_PRODUCT),
    ("confirm_", ActionKind.CONFIRM),
    ("retry_", ActionKind.RETRY),
    ("service_", ActionKind.SERVICE_DETAILS),
    ("product_", ActionKind.PRODUCT_DETAILS),
    ("book_", ActionKind.BOOK_SERVICE),
    ("quote_", ActionKind.QUOTE_SERVICE),
    ("demo_", ActionKind.DEMO_PRODUCT),
    ("info_", ActionKind.PRODUCT_INFO),
)

_ENCODINGS = {
    ActionKind.SHOW_SERVICES: "back_services",
    ActionKind.SHOW_PRODUCTS: "back_products",
    ActionKind.HUMAN_TRANSFER: "human_transfer",
    ActionKind.MAIN_MENU: "main_menu",
    ActionKind.HELP_MENU: "help_menu",
    ActionKind.SCHEDULE_DEMO: "schedule_demo",
}


def format_phone_number(raw: Optional[str]) -> str:
    """Digits only, without a leading international ``00``."""
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith("00"):
        digits = digits[2:]
    return digits


def decode_payload(payload: str) -> QuickAction:
    value = (payload or "").strip()
    if value in _FIXED_PAYLOADS:
        return _FIXED_PAYLOADS[value]
    for prefix, kind in _PREFIXES:
        if value.startswith(prefix) and len(value) > len(prefix):
            return QuickAction(kind, value[len(prefix) :])
    raise NotFoundError(f"Unknown WhatsApp payload: {payload}")


def encode_action(action: QuickAction) -> str:
    if action.kind in _ENCODINGS:
        return _ENCODINGS[action.kind]
    for prefix, kind in _PREFIXES:
        if kind == action.kind:
            return f"{prefix}{action.target}"
    raise NotFoundError(f"Action has no WhatsApp encoding: {action.kind}")


class WhatsAppAdapter(ChannelAdapter):
    platform = "whatsapp"

    def __init__(
        self,
        *,
        access_token: Optional[str],
        phone_number_id: Optional[str],
        api_url: str,
        app_secret: Optional[str],
        catalog: Optional[Catalog] = None,
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
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_url = api_url.rstrip("/")
        self.catalog = catalog

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    @property
    def messages_url(self) -> str:
        return f"{self.api_url}/{self.phone_number_id}/messages"

    # Inbound

    def extract_events(self, payload: dict) -> list[dict]:
        if not isinstance(payload, dict) or payload.get("object") != "whatsapp_business_account":
            raise UnrecognizedPayload("Not a WhatsApp Business webhook")

        events = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                if change.get("field") != "messages":
                    continue
                value = change.get("value") or {}
                for status in value.get("statuses") or []:
                    logger.info(
                        "WhatsApp status update",
                        extra={"context": {"message_id": status.get("id"), "status": status.get("status")}},
                    )
                events.extend(value.get("messages") or [])
        return events

    def normalize_inbound(self, event: dict) -> Optional[InboundMessage]:
        user_id = format_phone_number(event.get("from"))
        if not user_id:
            raise UnrecognizedPayload("WhatsApp message without sender")
        message_id = event.get("id")
        message_type = event.get("type")

        if message_type == "text":
            body = ((event.get("text") or {}).get("body") or "").strip()
            if not body:
                return None
            return InboundMessage(user_id=user_id, platform=self.platform, text=body, message_id=message_id)

        if message_type == "button":
            button = event.get("button") or {}
            return InboundMessage(
                user_id=user_id,
                platform=self.platform,
                text=button.get("text") or "",
                message_id=message_id,
                payload=button.get("payload") or button.get("text"),
            )

        if message_type == "interactive":
            interactive = event.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply")
            if not reply or not reply.get("id"):
                raise UnrecognizedPayload("Interactive reply without id")
            return InboundMessage(
                user_id=user_id,
                platform=self.platform,
                text=reply.get("title") or "",
                message_id=message_id,
                payload=reply["id"],
            )

        raise UnsupportedMessageType(UNSUPPORTED_MESSAGE_TEXT, user_id)

    def decode_payload(self, payload: str) -> QuickAction:
        return decode_payload(payload)

    def encode_action(self, action: QuickAction) -> str:
        return encode_action(action)

    # Outbound

    def _envelope(self, to: str, **body) -> dict:
        return {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to, **body}

    def _message_id(self, data: dict) -> Optional[str]:
        messages = data.get("messages") or []
        return messages[0].get("id") if messages else None

    async def _send(self, to: str, payload: dict, text: str) -> DeliveryOutcome:
        return await self._post(
            self.messages_url,
            payload,
            user_id=to,
            text=text,
            headers={"Authorization": f"Bearer {self.access_token}"},
        )

    async def send_text(self, user_id: str, text: str) -> DeliveryOutcome:
        to = format_phone_number(user_id)
        body = truncate(text, TEXT_LIMIT)
        if not body:
            return DeliveryOutcome.nothing_to_send()
        payload = self._envelope(to, type="text", text={"preview_url": False, "body": body})
        return await self._send(to, payload, body)

    async def send_buttons(self, user_id: str, text: str, buttons: list[Button]) -> DeliveryOutcome:
        to = format_phone_number(user_id)
        replies = [
            {"type": "reply", "reply": {"id": self.encode_action(b.action), "title": truncate(b.title, BUTTON_TITLE_LIMIT)}}
            for b in buttons[:MAX_BUTTONS]
        ]
        payload = self._envelope(
            to,
            type="interactive",
            interactive={
                "type": "button",
                "body": {"text": truncate(text, BODY_LIMIT)},
                "action": {"buttons": replies},
            },
        )
        return await self._send(to, payload, text)

    async def send_list(
        self,
        user_id: str,
        text: str,
        button_label: str,
        sections: list[tuple[str, list[tuple[str, str, str]]]],
        header: Optional[str] = None,
    ) -> DeliveryOutcome:
        """Send an interactive list. ``sections`` is [(title, [(row_id, title, description)])]."""
        to = format_phone_number(user_id)
        rendered = []
        remaining = MAX_LIST_ROWS
        for title, rows in sections:
            clean_rows = []
            for row_id, row_title, description in rows:
                if remaining <= 0:
                    break
                if not row_id or not (row_title or "").strip():
                    continue
                row = {"id": row_id, "title": truncate(row_title, ROW_TITLE_LIMIT)}
                if description:
                    row["description"] = truncate(description, ROW_DESCRIPTION_LIMIT)
                clean_rows.append(row)
                remaining -= 1
            if clean_rows:
                rendered.append({"title": truncate(title, SECTION_TITLE_LIMIT), "rows": clean_rows})

        if not rendered:
            return await self.send_text(user_id, text)

        interactive = {
            "type": "list",
            "body": {"text": truncate(text, BODY_LIMIT)},
            "action": {"button": truncate(button_label, LIST_BUTTON_LIMIT), "sections": rendered},
        }
        if header:
            interactive["header"] = {"type": "text", "text": truncate(header, 60)}
        payload = self._envelope(to, type="interactive", interactive=interactive)
        return await self._send(to, payload, text)

    def _carousel_sections(self, directive: CarouselDirective) -> list[tuple[str, list[tuple[str, str, str]]]]:
        kind = "service" if directive.kind == "services" else "product"
        prefix = "service_" if kind == "service" else "product_"
        wanted = {item.id for item in directive.items}

        def rows(items: tuple[CatalogItem, ...]) -> list[tuple[str, str, str]]:
            return [(f"{prefix}{item.id}", item.name, item.summary) for item in items if item.id in wanted]

        if self.catalog is None:
            title = "Services" if kind == "service" else "Products"
            return [(title, rows(directive.items))]
        return [(section.title, rows(section.items)) for section in self.catalog.sections(kind)]

    async def _render(self, user_id: str, directive: Directive) -> DeliveryOutcome:
        if isinstance(directive, CarouselDirective):
            label = "View Services" if directive.kind == "services" else "View Products"
            header = "Our Services" if directive.kind == "services" else "Our Products"
            return await self.send_list(
                user_id,
                f"{directive.text}\nSelect an option to see details:",
                label,
                self._carousel_sections(directive),
                header=header,
            )

        if isinstance(directive, (QuickRepliesDirective, ConfirmationPrompt)) and directive.buttons:
            outcomes = []
            body = directive.text
            if len(body) > BODY_LIMIT:
                outcomes.append(await self.send_text(user_id, body))
                body = "Choose an option:"
            buttons = list(directive.buttons)
            if len(buttons) <= MAX_BUTTONS:
                outcomes.append(await self.send_buttons(user_id, body, buttons))
            else:
                rows = [(self.encode_action(b.action), b.title, "") for b in buttons]
                outcomes.append(await self.send_list(user_id, body, "Options", [("Options", rows)]))
            return DeliveryOutcome.combine(outcomes)

        return await self.send_text(user_id, directive_text(directive))
