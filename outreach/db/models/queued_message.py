"""
Queued Message Model - durable outbound job
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, Enum as SQLEnum, JSON, Index

from outreach.db.database import Base
from outreach.state_machine.states import MessageStatus, MessagePriority


class QueuedMessage(Base):
    """One outbound message with retry tracking and delivery timestamps"""

    __tablename__ = "queued_messages"

    id = Column(Integer, primary_key=True, index=True)
    correlation_id = Column(String(100), nullable=True, index=True)

    contact = Column(String(20), nullable=False, index=True)  # normalized digits
    body = Column(Text, nullable=False)
    template_id = Column(String(100), nullable=True)

    priority = Column(Integer, nullable=False, default=int(MessagePriority.NORMAL))
    scheduled_for = Column(DateTime, nullable=False, default=datetime.utcnow)

    status = Column(SQLEnum(MessageStatus), nullable=False, default=MessageStatus.PENDING, index=True)
    current_retries = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)

    created_by = Column(String(100), nullable=False)
    external_id = Column(String(200), nullable=True, index=True)  # gateway message id
    last_error = Column(String(1000), nullable=True)
    # "metadata" is reserved on declarative classes
    extra_metadata = Column("metadata", JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    processing_started_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True, index=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_queued_messages_due", "status", "scheduled_for"),
    )
