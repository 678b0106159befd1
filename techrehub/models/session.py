from sqlalchemy import Column, DateTime, String, Text, UniqueConstraint

from techrehub.database import Base, JSONType
from techrehub.models._columns import new_id, utcnow


class ConversationSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (UniqueConstraint("user_id", "platform", name="uq_sessions_user_platform"),)

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(Text, nullable=False)
    platform = Column(String(20), nullable=False)  # whatsapp, messenger, web
    stage = Column(String(50), nullable=False, default="initial")
    context = Column(JSONType, nullable=False, default=dict)
    history = Column(JSONType, nullable=False, default=list)  # newest first
    last_activity = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
