"""
SQLAlchemy Database Models

Persistent tables behind SQLAlchemyCallStore:
- establishments: settings document, open flag and heartbeat
- calls: every call ever raised (never deleted)
- customer_favorites: customer ↔ establishment join relation
- event_log: attended/canceled/closed events for statistics
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.sql import func

from tablecall.database import Base
from tablecall.domain import CallStatus, CallType, EventLogType


class EstablishmentRecord(Base):
    """An establishment, its semaphore settings and its liveness."""
    __tablename__ = "establishments"

    id = Column(String(32), primary_key=True)
    owner_id = Column(String(64), nullable=True, index=True)
    name = Column(String(120), nullable=False)
    phone = Column(String(20), nullable=False, index=True)

    # Stored with the camelCase keys of EstablishmentSettings.to_dict()
    settings = Column(JSON, nullable=True)

    # =========================================================================
    # HEARTBEAT
    # =========================================================================
    is_open = Column(Boolean, default=False, nullable=False)
    heartbeat_at = Column(Float, nullable=True)  # epoch seconds

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<Establishment {self.id} - {self.name} - {'open' if self.is_open else 'closed'}>"


class CallRecord(Base):
    """
    One customer request at a table.

    Only ``status`` changes after insert. The autoincrement id doubles as
    insertion order for ties on ``created_at_ts``.
    """
    __tablename__ = "calls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    establishment_id = Column(
        String(32),
        ForeignKey("establishments.id"),
        nullable=False,
        index=True,
    )
    table_number = Column(String(3), nullable=False)
    type = Column(Enum(CallType), nullable=False)
    status = Column(Enum(CallStatus), default=CallStatus.SENT, nullable=False)
    created_at_ts = Column(Float, nullable=False)  # epoch seconds
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index("ix_calls_establishment_status", "establishment_id", "status"),
    )

    def __repr__(self):
        return f"<Call #{self.id} - table {self.table_number} - {self.type.value} - {self.status.value}>"


class CustomerFavoriteRecord(Base):
    """Customer ↔ establishment favorite (join table)."""
    __tablename__ = "customer_favorites"

    customer_id = Column(String(64), primary_key=True)
    establishment_id = Column(
        String(32),
        ForeignKey("establishments.id"),
        primary_key=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class EventLogRecord(Base):
    """Resolved-call and closed-table events."""
    __tablename__ = "event_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    establishment_id = Column(
        String(32),
        ForeignKey("establishments.id"),
        nullable=False,
        index=True,
    )
    timestamp = Column(Float, nullable=False, index=True)
    type = Column(Enum(EventLogType), nullable=False)
    call_type = Column(Enum(CallType), nullable=True)
    table_number = Column(String(3), nullable=True)
