from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class PendingSubmission:
    """Parsed workflow fields waiting for an explicit yes/no."""

    workflow: str
    reference: str
    fields: dict[str, str]
    item_id: str | None = None


@dataclass
class PaymentContext:
    reference: str
    amount: str
    currency: str
    description: str
    booking_reference: str | None = None
    method: str | None = None


@dataclass
class ConversationContext:
    """Typed view over the persisted ``context`` JSON of a session.

    ``item_id`` is the catalog item selected for the flow in progress,
    ``pending`` is only set in ``confirming_*`` stages, ``payment`` only in
    ``awaiting_payment`` / ``payment_completed`` and ``chat_session_id``
    only once a human transfer happened.
    """

    workflow: str | None = None
    item_id: str | None = None
    pending: PendingSubmission | None = None
    payment: PaymentContext | None = None
    chat_session_id: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ConversationContext":
        data = dict(data or {})
        pending = data.pop("pending", None)
        payment = data.pop("payment", None)
        return cls(
            workflow=data.pop("workflow", None),
            item_id=data.pop("item_id", None),
            pending=PendingSubmission(**pending) if isinstance(pending, dict) else None,
            payment=PaymentContext(**payment) if isinstance(payment, dict) else None,
            chat_session_id=data.pop("chat_session_id", None),
            extras=data,
        )

    def to_dict(self) -> dict:
        data: dict[str, Any] = dict(self.extras)
        if self.workflow:
            data["workflow"] = self.workflow
        if self.item_id:
            data["item_id"] = self.item_id
        if self.pending:
            data["pending"] = asdict(self.pending)
        if self.payment:
            data["payment"] = asdict(self.payment)
        if self.chat_session_id:
            data["chat_session_id"] = self.chat_session_id
        return data

    @classmethod
    def for_flow(cls, workflow: str, item_id: str | None = None) -> "ConversationContext":
        return cls(workflow=workflow, item_id=item_id)
