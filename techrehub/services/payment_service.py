from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from techrehub.logging_config import get_logger
from techrehub.models import Booking, Payment, Quotation
from techrehub.schemas.payment import PaymentCallbackRequest
from techrehub.services.errors import PaymentCallbackError
from techrehub.services.record_service import PaymentSummary, payment_summary
from techrehub.services.state_machine import PAYMENT_TRANSITIONS, PaymentStatus

logger = get_logger("payment_service")

PROVIDERS = ("ecocash", "onemoney", "bank-transfer", "card")
CENTS = Decimal("0.01")


@dataclass(frozen=True)
class CallbackOutcome:
    payment: PaymentSummary
    previous_status: str
    changed: bool


def parse_callback(provider: str, payload: dict) -> PaymentCallbackRequest:
    if provider not in PROVIDERS:
        raise PaymentCallbackError(f"Unsupported payment provider: {provider}", status_code=404)
    try:
        request = PaymentCallbackRequest.model_validate(payload or {})
    except PydanticValidationError:
        raise PaymentCallbackError("Invalid webhook payload")
    if provider == "bank-transfer" and not request.accountNumber:
        raise PaymentCallbackError("Invalid webhook payload")
    return request


def _status_for(request: PaymentCallbackRequest) -> PaymentStatus:
    return PaymentStatus.COMPLETED if request.status.strip().upper() == "SUCCESS" else PaymentStatus.FAILED


def apply_payment_callback(db: Session, provider: str, payload: dict) -> CallbackOutcome:
    """Apply a provider callback to the payment it references.

    Same-status replays are no-ops. Transitions outside the payment
    lifecycle raise a 409 ``PaymentCallbackError``.
    """
    request = parse_callback(provider, payload)

    payment = db.query(Payment).filter(Payment.reference == request.reference).first()
    if payment is None:
        raise PaymentCallbackError("Payment not found", status_code=404)

    if Decimal(str(payment.amount)).quantize(CENTS) != request.amount.quantize(CENTS):
        logger.warning(
            "Payment callback amount mismatch",
            extra={
                "context": {
                    "reference": request.reference,
                    "expected": str(payment.amount),
                    "received": str(request.amount),
                }
            },
        )
        raise PaymentCallbackError("Amount mismatch")

    current = PaymentStatus(payment.status)
    target = _status_for(request)
    if current == target:
        logger.info(
            "Payment callback replay ignored",
            extra={"context": {"reference": request.reference, "status": current.value}},
        )
        return CallbackOutcome(payment=payment_summary(payment), previous_status=current.value, changed=False)

    if target not in PAYMENT_TRANSITIONS[current]:
        raise PaymentCallbackError(
            f"Payment {request.reference} is already {current.value}",
            status_code=409,
        )

    payment.status = target.value
    payment.provider = provider
    payment.transaction_id = request.transactionId
    payment.provider_response = request.model_dump(mode="json")

    if target == PaymentStatus.COMPLETED:
        payment.paid_at = datetime.now(timezone.utc)
        if payment.booking_id:
            booking = db.query(Booking).filter(Booking.id == payment.booking_id).first()
            if booking:
                booking.payment_status = "paid"
        if payment.quotation_id:
            quotation = db.query(Quotation).filter(Quotation.id == payment.quotation_id).first()
            if quotation:
                quotation.status = "accepted"

    db.commit()
    logger.info(
        "Payment callback applied",
        extra={
            "context": {
                "reference": request.reference,
                "provider": provider,
                "old_status": current.value,
                "new_status": target.value,
            }
        },
    )
    return CallbackOutcome(payment=payment_summary(payment), previous_status=current.value, changed=True)
