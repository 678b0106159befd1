from typing import Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    success: bool
    processed: int = 0
    failed: int = 0
    message: Optional[str] = None
