from techrehub.schemas.payment import PaymentCallbackRequest, PaymentCallbackResponse
from techrehub.schemas.webhook import WebhookResponse

__all__ = ["PaymentCallbackRequest", "PaymentCallbackResponse", "WebhookResponse"]
