"""Shared shape of the WhatsApp and Messenger adapters.

An adapter verifies the webhook signature, splits a webhook body into
events, normalizes each event into an ``InboundMessage`` and renders reply
directives into channel API calls. Sends never raise: failures are stored
as fallback messages and reported as a soft-failure ``DeliveryOutcome``.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

import httpx

from techrehub.logging_config import get_logger
from techrehub.services.delivery import DeliveryOutcome
from techrehub.services.directives import Directive, NoAction, QuickAction
from techrehub.services.errors import TransportError
from techrehub.services.record_service import RecordService

logger = get_logger("channels")

ELLIPSIS = "..."


def truncate(text: Optional[str], limit: int) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[: max(limit - len(ELLIPSIS), 0)].rstrip() + ELLIPSIS


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


@dataclass(frozen=True)
class InboundMessage:
    """One normalized inbound event.

    ``payload`` is the raw button/postback id when the user tapped a reply;
    ``text`` then holds the button title.
    """

    user_id: str
    platform: str
    text: str = ""
    message_id: Optional[str] = None
    payload: Optional[str] = None

    @property
    def is_action(self) -> bool:
        return bool(self.payload)


class ChannelAdapter:
    platform = ""
    signature_header = "X-Hub-Signature-256"

    def __init__(
        self,
        *,
        app_secret: Optional[str],
        signature_required: bool = True,
        timeout: float = 15.0,
        records: Optional[RecordService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._app_secret = app_secret
        self._signature_required = signature_required
        self._timeout = timeout
        self._records = records
        self._transport = transport

    @property
    def configured(self) -> bool:
        raise NotImplementedError

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Check ``X-Hub-Signature-256`` against an HMAC-SHA256 of the raw body."""
        if not self._signature_required:
            return True
        if not self._app_secret:
            logger.error(f"{self.platform} app secret not configured, rejecting webhook")
            return False
        if not signature:
            return False
        expected = compute_signature(self._app_secret, body)
        return hmac.compare_digest(expected, signature.strip())

    def extract_events(self, payload: dict) -> list[dict]:
        raise NotImplementedError

    def normalize_inbound(self, event: dict) -> Optional[InboundMessage]:
        """Return the normalized message, or None for events that need no reply."""
        raise NotImplementedError

    def decode_payload(self, payload: str) -> QuickAction:
        raise NotImplementedError

    def encode_action(self, action: QuickAction) -> str:
        raise NotImplementedError

    async def send_text(self, user_id: str, text: str) -> DeliveryOutcome:
        raise NotImplementedError

    async def render(self, user_id: str, directive: Directive) -> DeliveryOutcome:
        if isinstance(directive, NoAction):
            return DeliveryOutcome.nothing_to_send()
        return await self._render(user_id, directive)

    async def _render(self, user_id: str, directive: Directive) -> DeliveryOutcome:
        raise NotImplementedError

    def _message_id(self, data: dict) -> Optional[str]:
        return None

    async def _post(
        self,
        url: str,
        payload: dict,
        *,
        user_id: str,
        text: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> DeliveryOutcome:
        try:
            data = await self._request(url, payload, params=params, headers=headers)
        except TransportError as e:
            logger.error(
                f"{self.platform} send failed: {e.message}",
                extra={"context": {"user_id": user_id, "platform": self.platform}},
            )
            return await self._fall_back(user_id, text, e.message)
        return DeliveryOutcome.delivered(self._message_id(data))

    async def _request(
        self,
        url: str,
        payload: dict,
        *,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> dict:
        """POST to the channel API and return the JSON body. Raises TransportError."""
        if not self.configured:
            raise TransportError(f"{self.platform} credentials not configured")

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, params=params, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(str(e) or e.__class__.__name__) from e

        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def _fall_back(self, user_id: str, text: str, error: str) -> DeliveryOutcome:
        if self._records is not None:
            try:
                await self._records.store_fallback_message(
                    platform=self.platform,
                    recipient=user_id,
                    message=text,
                    error=error,
                )
            except Exception as e:
                logger.error(f"Failed to store fallback message: {e}")
        return DeliveryOutcome.soft_failure(error)
