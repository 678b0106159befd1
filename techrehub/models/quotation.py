from sqlalchemy import Column, DateTime, String, Text

from techrehub.database import Base, JSONType
from techrehub.models._columns import new_id, utcnow


class Quotation(Base):
    __tablename__ = "quotations"

    id = Column(String(36), primary_key=True, default=new_id)
    reference = Column(String(20), nullable=False, unique=True)
    user_id = Column(Text, nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    kind = Column(String(20), nullable=False, default="service")  # service, product
    item_id = Column(String(100))
    customer_name = Column(Text, nullable=False)  # person for services, company for products
    requirements = Column(Text, nullable=False)
    timeline = Column(Text)
    budget = Column(Text)
    details = Column(JSONType, nullable=False, default=dict)
    # pending, quoted, accepted, rejected, expired
    status = Column(String(20), nullable=False, default="pending")
    valid_until = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
