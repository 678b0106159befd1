class ChatbotError(Exception):
    """Base class for errors raised below the webhook boundary."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ChatbotError):
    """User input is malformed or incomplete. Recoverable, shown to the user."""

    def __init__(self, message: str, expected_format: str | None = None):
        super().__init__(message)
        self.expected_format = expected_format


class NotFoundError(ChatbotError):
    """Unknown catalog item or record referenced, usually by a stale button."""


class TransportError(ChatbotError):
    """Outbound channel or classifier unavailable."""


class InternalError(ChatbotError):
    """Unexpected failure. Logged in full, user sees a generic apology."""


class UnrecognizedPayload(ChatbotError):
    """Inbound channel payload does not match any known message shape."""


class UnsupportedMessageType(UnrecognizedPayload):
    """Known message shape carrying content the bot cannot process (media, location...)."""

    def __init__(self, message: str, user_id: str):
        super().__init__(message)
        self.user_id = user_id


class ModelNotTrainedError(ChatbotError):
    """Classification requested before the intent model was trained."""


class PaymentCallbackError(ChatbotError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code
