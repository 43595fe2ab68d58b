from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AddressStatus:
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    RESERVED = "reserved"
    BLOCKED = "blocked"

    ALL = (AVAILABLE, ASSIGNED, RESERVED, BLOCKED)


class Router(Base):
    __tablename__ = "routers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    description = Column(Text)
    api_url = Column(String(255))  # e.g. 'https://10.0.0.1'
    username = Column(String(100))
    password = Column(String(255))
    active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    pools = relationship("Pool", back_populates="router")


class Pool(Base):
    __tablename__ = "pools"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    router_id = Column(Integer, ForeignKey("routers.id"), nullable=False, index=True)
    pool_type = Column(String(20), nullable=False, default="dynamic")  # dynamic, static, management, suspended, cut_service
    cidr = Column(String(18), nullable=False)
    network_address = Column(String(15), nullable=False)
    prefix_length = Column(Integer, nullable=False)
    # Integer bounds of the network, used for overlap checks
    first_int = Column(BigInteger, nullable=False)
    last_int = Column(BigInteger, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    degraded = Column(Boolean, nullable=False, default=False)
    degraded_reason = Column(Text)
    last_sync_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    router = relationship("Router", back_populates="pools")
    addresses = relationship("AddressRecord", back_populates="pool", passive_deletes=True)

    __table_args__ = (UniqueConstraint("router_id", "name", name="uq_pool_router_name"),)


class AddressRecord(Base):
    __tablename__ = "address_records"

    id = Column(Integer, primary_key=True, index=True)
    pool_id = Column(Integer, ForeignKey("pools.id", ondelete="CASCADE"), nullable=False, index=True)
    address = Column(String(15), nullable=False, unique=True)  # dotted quad
    address_int = Column(BigInteger, nullable=False)
    status = Column(String(20), nullable=False, default=AddressStatus.AVAILABLE)
    owner_session_id = Column(String(255), unique=True)
    comment = Column(Text)
    # Router state has not yet been brought in line with this row
    needs_sync = Column(Boolean, nullable=False, default=False)
    sync_attempts = Column(Integer, nullable=False, default=0)
    sync_flagged_at = Column(DateTime(timezone=True))
    last_modified = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    pool = relationship("Pool", back_populates="addresses")

    __table_args__ = (
        CheckConstraint(
            "status IN ('available', 'assigned', 'reserved', 'blocked')",
            name="ck_address_status",
        ),
        CheckConstraint(
            "(status = 'assigned' AND owner_session_id IS NOT NULL) OR "
            "(status <> 'assigned' AND owner_session_id IS NULL)",
            name="ck_address_owner_matches_status",
        ),
        Index("ix_address_pool_status_int", "pool_id", "status", "address_int"),
    )

    def __repr__(self):
        return f"<AddressRecord(address='{self.address}', status='{self.status}')>"
