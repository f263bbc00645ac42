"""
Alert Model - monitoring alerts raised by the health monitor

Acknowledged alerts are kept; nothing deletes them.
"""
import enum
from datetime import datetime
from sqlalchemy import Boolean, Column, Integer, DateTime, String, Enum as SQLEnum, Text
from sqlalchemy.types import JSON

from outreach.db.database import Base


class AlertSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


class Alert(Base):
    """Triggered alert"""

    __tablename__ = "pipeline_alerts"

    id = Column(Integer, primary_key=True, index=True)
    rule_id = Column(String(50), nullable=False, index=True)
    severity = Column(SQLEnum(AlertSeverity), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    triggered_at = Column(DateTime, default=datetime.utcnow, index=True)

    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_by = Column(String(100), nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledgement_note = Column(String(1000), nullable=True)
