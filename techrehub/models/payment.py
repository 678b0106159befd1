from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Text

from techrehub.database import Base, JSONType
from techrehub.models._columns import new_id, utcnow


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    reference = Column(String(20), nullable=False, unique=True)
    user_id = Column(Text, nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    customer_name = Column(Text, nullable=False)
    description = Column(Text)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    method = Column(String(20))  # cash, card, bank_transfer, ecocash, onemoney
    status = Column(String(20), nullable=False, default="pending")  # pending, completed, failed, refunded
    booking_id = Column(String(36), ForeignKey("bookings.id"))
    quotation_id = Column(String(36), ForeignKey("quotations.id"))
    provider = Column(String(20))
    transaction_id = Column(Text)
    provider_response = Column(JSONType)
    paid_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
