import io
import json
import logging
import sys

import pytest

from techrehub.logging_config import JSONFormatter, get_logger, mask_user_id, setup_logging, turn_logger


def _record(msg="Turn processed", context=None, exc_info=None):
    record = logging.LogRecord("techrehub.test", logging.INFO, __file__, 1, msg, None, exc_info)
    if context is not None:
        record.context = context
    return record


class TestMaskUserId:
    def test_phone_number_keeps_last_four(self):
        assert mask_user_id("263771234567") == "********4567"

    def test_short_and_empty_values_unchanged(self):
        assert mask_user_id("1234") == "1234"
        assert mask_user_id(None) is None


class TestJSONFormatter:
    def test_turn_fields_are_promoted_and_masked(self):
        context = {"user_id": "263771234567", "platform": "whatsapp", "message_id": "wamid.1", "intent": "greeting"}

        data = json.loads(JSONFormatter().format(_record(context=context)))

        assert data["user_id"] == "********4567"
        assert data["platform"] == "whatsapp"
        assert data["message_id"] == "wamid.1"
        assert data["context"] == {"intent": "greeting"}
        assert data["message"] == "Turn processed"

    def test_record_without_context(self):
        data = json.loads(JSONFormatter().format(_record()))
        assert "context" not in data
        assert "user_id" not in data

    def test_exception_is_included(self):
        try:
            raise RuntimeError("database unavailable")
        except RuntimeError:
            record = _record(msg="Turn failed", exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: database unavailable" in data["exception"]


class TestTurnLogger:
    @pytest.fixture
    def output(self):
        stream = io.StringIO()
        root = logging.getLogger()
        previous_handlers, previous_level = root.handlers[:], root.level
        setup_logging("INFO", stream=stream)
        yield stream
        root.handlers[:] = previous_handlers
        root.setLevel(previous_level)

    def test_turn_context_merges_with_call_context(self, output):
        log = turn_logger("conversation_engine", "263771234567", "whatsapp", "wamid.9")

        log.info("Turn processed", context={"intent": "service.list"})

        data = json.loads(output.getvalue().strip().splitlines()[-1])
        assert data["logger"] == "techrehub.conversation_engine"
        assert data["user_id"] == "********4567"
        assert data["message_id"] == "wamid.9"
        assert data["context"] == {"intent": "service.list"}

    def test_missing_message_id_is_omitted(self, output):
        turn_logger("conversation_engine", "psid-123456", "messenger").warning("Reference not found")

        data = json.loads(output.getvalue().strip().splitlines()[-1])
        assert data["level"] == "WARNING"
        assert "message_id" not in data
        assert data["platform"] == "messenger"

    def test_client_libraries_are_quieted(self, output):
        assert logging.getLogger("httpx").level == logging.WARNING
        assert get_logger("channels").name == "techrehub.channels"
