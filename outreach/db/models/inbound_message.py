"""
Inbound Message Model - replies received from contacts
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON

from outreach.db.database import Base


class InboundMessage(Base):
    """Reply from a contact, linked to the outbound conversation when known"""

    __tablename__ = "inbound_messages"

    id = Column(Integer, primary_key=True, index=True)
    contact = Column(String(20), nullable=False, index=True)
    body = Column(Text, nullable=False)
    # correlation id of the latest queued message to this contact, if any
    correlation_id = Column(String(100), nullable=True, index=True)
    external_id = Column(String(200), nullable=True)
    payload = Column(JSON, nullable=True)

    received_at = Column(DateTime, default=datetime.utcnow, index=True)
