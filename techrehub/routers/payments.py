import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from techrehub.database import get_db
from techrehub.logging_config import get_logger
from techrehub.runtime import Runtime, get_runtime
from techrehub.schemas.payment import PaymentCallbackResponse
from techrehub.services.errors import PaymentCallbackError
from techrehub.services.payment_service import apply_payment_callback
from techrehub.services.webhook_service import deliver, parse_body

logger = get_logger("payment_webhook")

router = APIRouter(prefix="/webhooks/payments", tags=["payments"])


@router.post("/{provider}", response_model=PaymentCallbackResponse)
async def handle_payment_callback(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    """Provider payment callback (ecocash, onemoney, bank-transfer, card)."""
    payload = parse_body(await request.body())
    try:
        outcome = await asyncio.to_thread(apply_payment_callback, db, provider, payload)
    except PaymentCallbackError as e:
        logger.warning(
            f"Payment callback rejected: {e.message}",
            extra={"context": {"provider": provider, "reference": payload.get("reference")}},
        )
        raise HTTPException(status_code=e.status_code, detail=e.message)

    payment = outcome.payment
    if outcome.changed:
        result = await runtime.engine.on_payment_update(payment)
        try:
            adapter = runtime.adapter_for(payment.platform)
        except KeyError:
            logger.info(f"No channel adapter for platform {payment.platform}, receipt not sent")
        else:
            await deliver(runtime, adapter, payment.user_id, result.directive)

    return PaymentCallbackResponse(
        success=True,
        reference=payment.reference,
        status=payment.status,
        message="Payment updated" if outcome.changed else "Payment already processed",
    )
