from techrehub.models.booking import Booking
from techrehub.models.chat_session import ChatSession
from techrehub.models.demo_request import DemoRequest
from techrehub.models.fallback_message import FallbackMessage
from techrehub.models.payment import Payment
from techrehub.models.quotation import Quotation
from techrehub.models.session import ConversationSession

__all__ = [
    "ConversationSession",
    "Booking",
    "Quotation",
    "DemoRequest",
    "Payment",
    "ChatSession",
    "FallbackMessage",
]
