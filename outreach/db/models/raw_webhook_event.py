"""
Raw Webhook Event Model - every gateway callback, stored before it is handled.

A record with processed=False is picked up again by the recovery sweep.
Unrecognized payloads are kept as processed with processing_error set, so
they can be inspected manually.
"""
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Index

from outreach.db.database import Base


class RawWebhookEvent(Base):
    """Gateway callback as received"""

    __tablename__ = "gateway_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(50), nullable=True)  # declared or inferred
    payload = Column(JSON, nullable=False)

    external_id = Column(String(200), nullable=True, index=True)
    contact = Column(String(20), nullable=True)

    processed = Column(Boolean, nullable=False, default=False)
    processing_error = Column(String(1000), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_gateway_webhook_events_processed_created", "processed", "created_at"),
    )
