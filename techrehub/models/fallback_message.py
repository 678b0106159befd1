from sqlalchemy import Column, DateTime, String, Text

from techrehub.database import Base
from techrehub.models._columns import new_id, utcnow


class FallbackMessage(Base):
    __tablename__ = "fallback_messages"

    id = Column(String(36), primary_key=True, default=new_id)
    platform = Column(String(20), nullable=False)
    recipient = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    error = Column(Text)
    status = Column(String(30), nullable=False, default="pending_manual_send")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
