"""Domain record persistence: bookings, quotations, demo requests, payments,
escalation chat sessions and fallback messages.

Module-level functions take an open SQLAlchemy session; ``RecordService``
wraps them for the async conversation engine.
"""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from techrehub.logging_config import get_logger
from techrehub.models import Booking, ChatSession, DemoRequest, FallbackMessage, Payment, Quotation
from techrehub.services.errors import InternalError, NotFoundError
from techrehub.services.workflows import DomainRecordRequest, parse_booking_date, parse_booking_time

logger = get_logger("record_service")

QUOTATION_VALIDITY = timedelta(days=30)
PAYMENT_METHODS = ("ecocash", "onemoney", "bank_transfer", "card", "cash")


@dataclass(frozen=True)
class RecordReceipt:
    kind: str
    reference: str
    record_id: str
    created: bool


@dataclass(frozen=True)
class PaymentSummary:
    reference: str
    amount: Decimal
    currency: str
    status: str
    description: str
    user_id: str
    platform: str
    method: str | None = None

    @property
    def amount_label(self) -> str:
        return f"${self.amount:.2f}" if self.currency == "USD" else f"{self.amount:.2f} {self.currency}"


def _model_for(kind: str):
    if kind == "booking":
        return Booking
    if kind in ("quotation", "product_quotation"):
        return Quotation
    if kind == "demo":
        return DemoRequest
    raise InternalError(f"Unknown record kind: {kind}")


def _build_record(request: DomainRecordRequest, now: datetime):
    fields = request.fields
    common = {"reference": request.reference, "user_id": request.user_id, "platform": request.platform}
    if request.kind == "booking":
        return Booking(
            **common,
            service_id=request.item_id,
            customer_name=fields["name"],
            booking_date=parse_booking_date(fields["date"]),
            booking_time=parse_booking_time(fields["time"]),
            description=fields["description"],
            status="pending",
        )
    if request.kind == "quotation":
        return Quotation(
            **common,
            kind="service",
            item_id=request.item_id,
            customer_name=fields["name"],
            requirements=fields["requirements"],
            timeline=fields.get("timeline"),
            budget=fields.get("budget"),
            details=dict(fields),
            status="pending",
            valid_until=now + QUOTATION_VALIDITY,
        )
    if request.kind == "product_quotation":
        return Quotation(
            **common,
            kind="product",
            item_id=request.item_id,
            customer_name=fields["company"],
            requirements=fields["features"],
            timeline=fields.get("timeline"),
            budget=fields.get("budget"),
            details=dict(fields),
            status="pending",
            valid_until=now + QUOTATION_VALIDITY,
        )
    return DemoRequest(
        **common,
        product_id=request.item_id,
        contact_name=fields["name"],
        company=fields["company"],
        preferred_time=fields["preferred_time"],
        users=fields.get("users") or "Not specified",
        status="pending",
    )


def _existing_receipt(db: Session, request: DomainRecordRequest) -> RecordReceipt | None:
    model = _model_for(request.kind)
    existing = db.query(model).filter(model.reference == request.reference).first()
    if existing is None:
        return None
    if existing.user_id != request.user_id:
        raise InternalError(f"Reference {request.reference} already belongs to another user")
    return RecordReceipt(kind=request.kind, reference=existing.reference, record_id=existing.id, created=False)


def create_record(db: Session, request: DomainRecordRequest) -> RecordReceipt:
    """Create the domain record for a confirmed workflow. Idempotent on reference."""
    existing = _existing_receipt(db, request)
    if existing:
        logger.info(
            "Record already exists, skipping create",
            extra={"context": {"kind": request.kind, "reference": request.reference}},
        )
        return existing

    record = _build_record(request, datetime.now(timezone.utc))
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _existing_receipt(db, request)
        if existing:
            return existing
        raise
    logger.info(
        "Record created",
        extra={"context": {"kind": request.kind, "reference": request.reference, "user_id": request.user_id}},
    )
    return RecordReceipt(kind=request.kind, reference=record.reference, record_id=record.id, created=True)


def payment_summary(payment: Payment) -> PaymentSummary:
    return PaymentSummary(
        reference=payment.reference,
        amount=Decimal(str(payment.amount)).quantize(Decimal("0.01")),
        currency=payment.currency,
        status=payment.status,
        description=payment.description or "",
        user_id=payment.user_id,
        platform=payment.platform,
        method=payment.method,
    )


def create_payment(
    db: Session,
    *,
    user_id: str,
    platform: str,
    customer_name: str,
    amount: Decimal,
    description: str,
    booking_reference: str | None = None,
    currency: str = "USD",
) -> PaymentSummary:
    booking_id = None
    if booking_reference:
        booking = db.query(Booking).filter(Booking.reference == booking_reference).first()
        booking_id = booking.id if booking else None
        if booking_id:
            existing = (
                db.query(Payment)
                .filter(Payment.booking_id == booking_id, Payment.status == "pending")
                .first()
            )
            if existing:
                return payment_summary(existing)

    payment = Payment(
        reference=f"PY{secrets.token_hex(4).upper()}",
        user_id=user_id,
        platform=platform,
        customer_name=customer_name,
        description=description,
        amount=amount,
        currency=currency,
        status="pending",
        booking_id=booking_id,
    )
    db.add(payment)
    db.commit()
    return payment_summary(payment)


def set_payment_method(db: Session, reference: str, method: str) -> PaymentSummary:
    payment = db.query(Payment).filter(Payment.reference == reference).first()
    if payment is None:
        raise NotFoundError(f"Payment {reference} not found")
    payment.method = method
    db.commit()
    return payment_summary(payment)


def latest_payment(db: Session, user_id: str, platform: str) -> PaymentSummary | None:
    payment = (
        db.query(Payment)
        .filter(Payment.user_id == user_id, Payment.platform == platform)
        .order_by(Payment.created_at.desc())
        .first()
    )
    return payment_summary(payment) if payment else None


def create_chat_session(
    db: Session,
    *,
    user_id: str,
    platform: str,
    message: str,
    history: list[dict],
    topic: str = "Human Transfer Request",
) -> ChatSession:
    """Open an escalation chat with the conversation history snapshot, oldest first."""
    now = datetime.now(timezone.utc)
    messages = [
        {"content": entry.get("content"), "from": user_id, "type": "user", "timestamp": entry.get("timestamp")}
        for entry in reversed(history or [])
    ]
    if not messages or messages[-1]["content"] != message:
        messages.append({"content": message, "from": user_id, "type": "user", "timestamp": now.isoformat()})

    chat = ChatSession(
        user_id=user_id,
        platform=platform,
        topic=topic,
        status="active",
        messages=messages,
        created_at=now,
    )
    db.add(chat)
    db.flush()
    db.commit()
    return chat


def append_chat_message(db: Session, chat_session_id: str, content: str, sender_type: str = "user") -> bool:
    """Append to an open chat. Returns False when the chat is missing or closed."""
    chat = db.query(ChatSession).filter(ChatSession.id == chat_session_id).first()
    if chat is None or chat.status == "closed":
        return False
    chat.messages = [
        *(chat.messages or []),
        {
            "content": content,
            "from": chat.user_id if sender_type == "user" else sender_type,
            "type": sender_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    ]
    db.commit()
    return True


def store_fallback_message(db: Session, *, platform: str, recipient: str, message: str, error: str | None) -> str:
    fallback = FallbackMessage(
        platform=platform,
        recipient=recipient,
        message=message,
        error=error,
        status="pending_manual_send",
    )
    db.add(fallback)
    db.commit()
    logger.warning(
        "Fallback message stored for manual send",
        extra={"context": {"platform": platform, "recipient": recipient, "error": error}},
    )
    return fallback.id


class RecordService:
    """Async facade used by the engine and adapters; each call gets its own DB session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    async def _run(self, func, *args, **kwargs):
        def call():
            db = self._session_factory()
            try:
                return func(db, *args, **kwargs)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

        return await asyncio.to_thread(call)

    async def create_record(self, request: DomainRecordRequest) -> RecordReceipt:
        return await self._run(create_record, request)

    async def create_payment(self, **kwargs) -> PaymentSummary:
        return await self._run(create_payment, **kwargs)

    async def set_payment_method(self, reference: str, method: str) -> PaymentSummary:
        return await self._run(set_payment_method, reference, method)

    async def latest_payment(self, user_id: str, platform: str) -> PaymentSummary | None:
        return await self._run(latest_payment, user_id, platform)

    async def create_chat_session(self, **kwargs) -> str:
        def _create(db: Session, **inner) -> str:
            return create_chat_session(db, **inner).id

        return await self._run(_create, **kwargs)

    async def append_chat_message(self, chat_session_id: str, content: str, sender_type: str = "user") -> bool:
        return await self._run(append_chat_message, chat_session_id, content, sender_type)

    async def store_fallback_message(self, **kwargs) -> str:
        return await self._run(store_fallback_message, **kwargs)
