from unittest.mock import AsyncMock

import pytest

from techrehub.services.delivery import DeliveryOutcome
from techrehub.services.notifier import OperatorNotifier, format_notification


class TestFormatNotification:
    def test_known_event_title(self):
        text = format_notification("NEW_BOOKING", {"reference": "BK12345678", "name": "John"})
        assert text.startswith("*📅 New Booking*")
        assert "reference: BK12345678" in text
        assert "name: John" in text

    def test_empty_values_are_skipped(self):
        text = format_notification("NEW_QUOTATION", {"reference": "QT1", "item": None, "budget": ""})
        assert "item" not in text
        assert "budget" not in text

    def test_unknown_event_uses_generic_title(self):
        assert format_notification("SOMETHING_ELSE") == "*📢 SOMETHING_ELSE*"


class TestOperatorNotifier:
    @pytest.mark.asyncio
    async def test_sends_to_every_admin(self):
        send_text = AsyncMock(return_value=DeliveryOutcome.delivered("wamid.1"))
        notifier = OperatorNotifier(send_text, ["263770000001", "263770000002"])

        delivered = await notifier.notify("HUMAN_TRANSFER", {"from": "263771234567"})

        assert delivered
        assert [call.args[0] for call in send_text.await_args_list] == ["263770000001", "263770000002"]

    @pytest.mark.asyncio
    async def test_unconfigured_notifier_does_nothing(self):
        notifier = OperatorNotifier(None, [])
        assert not notifier.configured
        assert await notifier.notify("NEW_BOOKING", {"reference": "BK1"}) is False

    @pytest.mark.asyncio
    async def test_one_failing_admin_does_not_stop_the_others(self):
        send_text = AsyncMock(side_effect=[RuntimeError("network"), DeliveryOutcome.delivered()])
        notifier = OperatorNotifier(send_text, ["263770000001", "263770000002"])

        assert await notifier.notify("API_FAILURE", {"error": "timeout"})
        assert send_text.await_count == 2

    @pytest.mark.asyncio
    async def test_soft_failures_are_not_delivered(self):
        send_text = AsyncMock(return_value=DeliveryOutcome.soft_failure("500"))
        notifier = OperatorNotifier(send_text, ["263770000001"])

        assert await notifier.notify("PAYMENT_FAILED", {"reference": "PY1"}) is False

    @pytest.mark.asyncio
    async def test_background_notifications_can_be_drained(self):
        send_text = AsyncMock(return_value=DeliveryOutcome.delivered())
        notifier = OperatorNotifier(send_text, ["263770000001"])

        task = notifier.notify_in_background("NEW_DEMO_REQUEST", {"reference": "DM1"})
        await notifier.drain()

        assert task.done()
        send_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_background_failure_is_contained(self):
        send_text = AsyncMock(side_effect=RuntimeError("boom"))
        notifier = OperatorNotifier(send_text, ["263770000001"])

        notifier.notify_in_background("NEW_BOOKING")
        await notifier.drain()

    def test_background_without_loop_is_dropped(self):
        notifier = OperatorNotifier(AsyncMock(), ["263770000001"])
        assert notifier.notify_in_background("NEW_BOOKING") is None
