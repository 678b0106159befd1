from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class PaymentCallbackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reference: str = Field(min_length=1)
    status: str = Field(min_length=1)
    amount: Decimal
    transactionId: str = Field(
        min_length=1,
        validation_alias=AliasChoices("transactionId", "transaction_id"),
    )
    accountNumber: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("accountNumber", "account_number"),
    )
    last4: Optional[str] = None
    brand: Optional[str] = None


class PaymentCallbackResponse(BaseModel):
    success: bool
    reference: str
    status: str
    message: Optional[str] = None
