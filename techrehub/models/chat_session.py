from sqlalchemy import Column, DateTime, String, Text

from techrehub.database import Base, JSONType
from techrehub.models._columns import new_id, utcnow


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(Text, nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    topic = Column(Text, nullable=False, default="Human Transfer Request")
    status = Column(String(20), nullable=False, default="active")  # active, transferred, closed
    assigned_agent = Column(Text)
    messages = Column(JSONType, nullable=False, default=list)  # {content, from, type, timestamp}
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    closed_at = Column(DateTime(timezone=True))
