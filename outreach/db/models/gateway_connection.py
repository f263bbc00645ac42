"""
Gateway Connection Model - last known connectivity per gateway instance
"""
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, String

from outreach.db.database import Base


class GatewayConnection(Base):
    """Connectivity reported by the gateway (webhook or status probe)"""

    __tablename__ = "gateway_connections"

    instance_id = Column(String(100), primary_key=True)
    connected = Column(Boolean, nullable=True)  # None until the first report
    identity = Column(String(100), nullable=True)  # connected phone number
    last_error = Column(String(1000), nullable=True)

    last_seen_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow)
