from sqlalchemy import Column, DateTime, String, Text

from techrehub.database import Base
from techrehub.models._columns import new_id, utcnow


class DemoRequest(Base):
    __tablename__ = "demo_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    reference = Column(String(20), nullable=False, unique=True)
    user_id = Column(Text, nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    product_id = Column(String(100))
    contact_name = Column(Text, nullable=False)
    company = Column(Text, nullable=False)
    preferred_time = Column(Text, nullable=False)
    users = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending, scheduled, completed, cancelled
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
