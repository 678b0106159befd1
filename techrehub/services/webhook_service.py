"""Webhook batch processing shared by the WhatsApp and Messenger routers.

Each event in a batch is handled independently: a failing event is logged
and counted, never aborting its siblings or the 200 response.
"""

import asyncio
import hmac
import json
from typing import Mapping, Optional

from techrehub.logging_config import get_logger
from techrehub.runtime import Runtime
from techrehub.schemas.webhook import WebhookResponse
from techrehub.services.channel_base import ChannelAdapter
from techrehub.services.conversation_engine import MSG_NOT_FOUND, MessageMeta
from techrehub.services.delivery import DeliveryOutcome
from techrehub.services.directives import Directive, TextDirective, TurnResult
from techrehub.services.errors import NotFoundError, UnrecognizedPayload, UnsupportedMessageType

logger = get_logger("webhook_service")


def verify_subscription(params: Mapping[str, str], expected_token: Optional[str]) -> Optional[str]:
    """Return the challenge to echo for a valid subscription handshake, else None."""
    if params.get("hub.mode") != "subscribe" or not expected_token:
        return None
    provided = params.get("hub.verify_token") or ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected_token.encode("utf-8")):
        return None
    return params.get("hub.challenge") or ""


def parse_body(body: bytes) -> dict:
    try:
        payload = json.loads(body.decode("utf-8", errors="replace") or "{}")
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return {}
    return payload if isinstance(payload, dict) else {}


async def deliver(runtime: Runtime, adapter: ChannelAdapter, user_id: str, directive: Directive) -> DeliveryOutcome:
    outcome = await adapter.render(user_id, directive)
    if outcome.fallback:
        runtime.notifier.notify_in_background(
            "API_FAILURE",
            {"platform": adapter.platform, "recipient": user_id, "error": outcome.error},
        )
    return outcome


async def handle_event(runtime: Runtime, adapter: ChannelAdapter, event: dict) -> Optional[DeliveryOutcome]:
    try:
        inbound = adapter.normalize_inbound(event)
    except UnsupportedMessageType as e:
        return await deliver(runtime, adapter, e.user_id, TextDirective(e.message))
    if inbound is None:
        return None

    meta = MessageMeta(platform=adapter.platform, user_id=inbound.user_id, message_id=inbound.message_id)
    if inbound.is_action:
        try:
            action = adapter.decode_payload(inbound.payload)
        except NotFoundError as e:
            logger.warning(e.message, extra={"context": {"user_id": inbound.user_id, "platform": adapter.platform}})
            result = TurnResult(intent="not_found", directive=TextDirective(MSG_NOT_FOUND))
        else:
            result = await runtime.engine.handle_action(action, meta, label=inbound.text or None)
    else:
        result = await runtime.engine.process_message(inbound.text, meta)

    return await deliver(runtime, adapter, inbound.user_id, result.directive)


async def _handle_safely(runtime: Runtime, adapter: ChannelAdapter, event: dict) -> bool:
    try:
        await handle_event(runtime, adapter, event)
        return True
    except UnrecognizedPayload as e:
        logger.warning(f"Skipping {adapter.platform} event: {e.message}")
        return False
    except Exception:
        logger.error(f"Failed to handle {adapter.platform} event", exc_info=True)
        return False


async def process_webhook(runtime: Runtime, adapter: ChannelAdapter, payload: dict) -> WebhookResponse:
    try:
        events = adapter.extract_events(payload)
    except UnrecognizedPayload as e:
        logger.warning(f"Ignoring {adapter.platform} webhook: {e.message}")
        return WebhookResponse(success=True, message=e.message)

    results = await asyncio.gather(*(_handle_safely(runtime, adapter, event) for event in events))
    processed = sum(1 for ok in results if ok)
    failed = len(results) - processed
    logger.info(
        "Webhook processed",
        extra={"context": {"platform": adapter.platform, "events": len(results), "failed": failed}},
    )
    return WebhookResponse(success=True, processed=processed, failed=failed)
