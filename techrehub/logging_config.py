"""JSON logging for the TechRehub chatbot.

Every record is one JSON object per line. Turn fields (user, platform,
message id) are promoted to top-level keys so a conversation can be followed
across log lines; user ids are phone numbers or PSIDs and are masked down to
their last four characters.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any, Optional

TURN_FIELDS = ("user_id", "platform", "message_id")
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


def mask_user_id(user_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return user_id
    value = str(user_id)
    if len(value) <= 4:
        return value
    return "*" * (len(value) - 4) + value[-4:]


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = dict(getattr(record, "context", None) or {})
        for field in TURN_FIELDS:
            value = context.pop(field, None)
            if value is not None:
                log_data[field] = mask_user_id(value) if field == "user_id" else value
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", stream: Optional[IO[str]] = None) -> logging.Handler:
    """Replace the root handlers with a single JSON handler and quiet client libraries."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return handler


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"techrehub.{name}")


class TurnLogger(logging.LoggerAdapter):
    """Attach the turn's (user, platform, message) to every record.

    Call sites add per-record fields with ``context={...}``.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        turn = {key: value for key, value in (self.extra or {}).items() if value is not None}
        kwargs["extra"] = {"context": {**turn, **(kwargs.pop("context", None) or {})}}
        return msg, kwargs


def turn_logger(name: str, user_id: str, platform: str, message_id: Optional[str] = None) -> TurnLogger:
    return TurnLogger(get_logger(name), {"user_id": user_id, "platform": platform, "message_id": message_id})
