from sqlalchemy import Column, Date, DateTime, String, Text, Time

from techrehub.database import Base
from techrehub.models._columns import new_id, utcnow


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=new_id)
    reference = Column(String(20), nullable=False, unique=True)
    user_id = Column(Text, nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    service_id = Column(String(100))
    customer_name = Column(Text, nullable=False)
    booking_date = Column(Date, nullable=False)
    booking_time = Column(Time, nullable=False)
    description = Column(Text, nullable=False)
    # pending, confirmed, in_progress, completed, cancelled, no_show
    status = Column(String(20), nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default="unpaid")  # unpaid, paid
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
