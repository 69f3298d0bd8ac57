"""
SQLAlchemy database models
"""
from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Table,
    UniqueConstraint, text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.database import Base
from models import CounterStatus, EntryStatus, QueueStatus

# Partial-index predicate for "customer is still in this queue"
ACTIVE_ENTRY_PREDICATE = text("status IN ('waiting', 'called', 'in_service')")


counter_services = Table(
    "counter_services",
    Base.metadata,
    Column("counter_id", String, ForeignKey("counters.id", ondelete="CASCADE"), primary_key=True),
    Column("service_id", String, ForeignKey("services.id", ondelete="CASCADE"), primary_key=True),
)


class Service(Base):
    """Service catalog entry"""
    __tablename__ = "services"

    id = Column(String, primary_key=True)  # e.g., "consultation"
    name = Column(String, nullable=False, unique=True)
    description = Column(String)
    category = Column(String)
    duration_minutes = Column(Integer, nullable=False)
    price = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Counter(Base):
    """Service point handling entries for a set of services"""
    __tablename__ = "counters"

    id = Column(String, primary_key=True)
    counter_number = Column(Integer, nullable=False, unique=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default=CounterStatus.AVAILABLE.value)
    # Back-reference only; the entry is owned by its queue
    current_entry_id = Column(String, nullable=True)
    average_service_time = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    services = relationship("Service", secondary=counter_services, lazy="selectin")

    __table_args__ = (
        Index('idx_counter_status', 'status'),
    )


class ServiceQueue(Base):
    """Queue aggregate for one service: capacity, occupancy and numbering"""
    __tablename__ = "queues"

    id = Column(String, primary_key=True)
    service_id = Column(String, ForeignKey("services.id"), nullable=False, unique=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default=QueueStatus.ACTIVE.value)
    capacity = Column(Integer, nullable=True)
    occupancy = Column(Integer, nullable=False, default=0)
    last_sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class QueueEntry(Base):
    """One customer's participation in a service queue"""
    __tablename__ = "queue_entries"

    id = Column(String, primary_key=True)
    queue_id = Column(String, ForeignKey("queues.id"), nullable=False)
    sequence_number = Column(Integer, nullable=False)
    customer_id = Column(String, nullable=False)
    service_id = Column(String, ForeignKey("services.id"), nullable=False)
    counter_id = Column(String, ForeignKey("counters.id"), nullable=True)
    status = Column(String, nullable=False, default=EntryStatus.WAITING.value)
    priority = Column(Integer, nullable=False, default=0)
    estimated_wait_minutes = Column(Integer, nullable=False, default=0)
    actual_wait_minutes = Column(Integer, nullable=True)
    notes = Column(String(500))
    joined_at = Column(DateTime(timezone=True), nullable=False)
    called_at = Column(DateTime(timezone=True))
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('queue_id', 'sequence_number', name='uq_entry_queue_sequence'),
        Index(
            'uq_entry_active_membership',
            'customer_id', 'service_id',
            unique=True,
            postgresql_where=ACTIVE_ENTRY_PREDICATE,
            sqlite_where=ACTIVE_ENTRY_PREDICATE,
        ),
        Index('idx_entry_service_status', 'service_id', 'status'),
        Index('idx_entry_counter_status', 'counter_id', 'status'),
        Index('idx_entry_joined_at', 'joined_at'),
    )
