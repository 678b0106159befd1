from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse

from techrehub.config import settings
from techrehub.logging_config import get_logger
from techrehub.runtime import Runtime, get_runtime
from techrehub.schemas.webhook import WebhookResponse
from techrehub.services.webhook_service import parse_body, process_webhook, verify_subscription

logger = get_logger("whatsapp_webhook")

router = APIRouter(prefix="/webhooks/whatsapp", tags=["whatsapp"])


@router.get("", response_class=PlainTextResponse)
async def verify_whatsapp_webhook(request: Request):
    """Meta subscription handshake."""
    challenge = verify_subscription(request.query_params, settings.whatsapp_verify_token)
    if challenge is None:
        logger.warning("WhatsApp webhook verification failed")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")
    return PlainTextResponse(challenge)


@router.post("", response_model=WebhookResponse)
async def handle_whatsapp_webhook(request: Request, runtime: Runtime = Depends(get_runtime)):
    """Inbound WhatsApp messages. Always 200 unless the signature is invalid."""
    body = await request.body()
    adapter = runtime.whatsapp
    if not adapter.verify_signature(body, request.headers.get(adapter.signature_header)):
        logger.warning("Invalid WhatsApp webhook signature")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")
    return await process_webhook(runtime, adapter, parse_body(body))
