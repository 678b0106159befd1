"""Operator notifications sent as WhatsApp texts to the admin numbers.

Notifications are best effort: ``notify_in_background`` schedules them as
tasks whose failures are only logged.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from techrehub.logging_config import get_logger
from techrehub.services.delivery import DeliveryOutcome

logger = get_logger("notifier")

SendText = Callable[[str, str], Awaitable[DeliveryOutcome]]

_TITLES = {
    "NEW_BOOKING": "📅 New Booking",
    "NEW_QUOTATION": "📝 New Quotation Request",
    "NEW_PRODUCT_QUOTATION": "📝 New Product Quotation Request",
    "NEW_DEMO_REQUEST": "🎯 New Demo Request",
    "HUMAN_TRANSFER": "🙋 Human Transfer Requested",
    "API_FAILURE": "⚠️ Message Delivery Failed",
    "PAYMENT_RECEIVED": "💰 Payment Received",
    "PAYMENT_FAILED": "❌ Payment Failed",
}


def format_notification(event: str, data: Optional[dict] = None) -> str:
    title = _TITLES.get(event, f"📢 {event}")
    text = f"*{title}*"
    if data:
        lines = "\n".join(f"{key}: {value}" for key, value in data.items() if value not in (None, ""))
        if lines:
            text += f"\n\n{lines}"
    return text


class OperatorNotifier:
    def __init__(self, send_text: SendText | None, admin_numbers: list[str]):
        self._send_text = send_text
        self._admin_numbers = list(admin_numbers)
        self._tasks: set[asyncio.Task] = set()

    @property
    def configured(self) -> bool:
        return bool(self._send_text and self._admin_numbers)

    async def notify(self, event: str, data: Optional[dict] = None) -> bool:
        """Send one notification to every admin. Returns True if at least one was delivered."""
        if not self.configured:
            logger.warning(f"Operator notification not configured: {event}", extra={"context": data or {}})
            return False

        text = format_notification(event, data)
        delivered = False
        for number in self._admin_numbers:
            try:
                outcome = await self._send_text(number, text)
                delivered = delivered or outcome.ok
            except Exception as e:
                logger.error(f"Failed to notify operator {number}: {e}")
        return delivered

    def notify_in_background(self, event: str, data: Optional[dict] = None) -> asyncio.Task | None:
        try:
            task = asyncio.get_running_loop().create_task(self.notify(event, data))
        except RuntimeError:
            logger.warning(f"No running loop, dropping notification: {event}")
            return None
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Operator notification failed: {exc}")

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
