from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from ..database import Base


class AddressEvent(Base):
    __tablename__ = "address_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    address = Column(String(15), index=True)
    pool_id = Column(Integer)
    session_id = Column(String(255))
    detail = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
