from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of handing a directive to a channel.

    ``fallback`` means the send failed and the text was stored for manual
    follow-up; the caller should alert an operator rather than raise.
    """

    ok: bool
    fallback: bool = False
    message_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    @staticmethod
    def delivered(message_id: Optional[str] = None) -> "DeliveryOutcome":
        return DeliveryOutcome(ok=True, message_id=message_id)

    @staticmethod
    def soft_failure(error: str) -> "DeliveryOutcome":
        return DeliveryOutcome(ok=False, fallback=True, error=error)

    @staticmethod
    def nothing_to_send() -> "DeliveryOutcome":
        return DeliveryOutcome(ok=True, skipped=True)

    @staticmethod
    def combine(outcomes: list["DeliveryOutcome"]) -> "DeliveryOutcome":
        if not outcomes:
            return DeliveryOutcome.nothing_to_send()
        failed = [outcome for outcome in outcomes if not outcome.ok]
        if failed:
            return failed[0]
        return outcomes[-1]
