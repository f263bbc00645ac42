"""
Log Entry Model - append-only activity log of the pipeline

Queried by the admin UI (recent logs by level/category/time range).
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, DateTime, String, Enum as SQLEnum, Text
from sqlalchemy.types import JSON

from outreach.db.database import Base


class LogLevel(str, enum.Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LogCategory(str, enum.Enum):
    QUEUE = "queue"
    TRANSPORT = "transport"
    WEBHOOK = "webhook"
    COMPLIANCE = "compliance"
    MONITORING = "monitoring"


class LogEntry(Base):
    __tablename__ = "pipeline_logs"

    id = Column(Integer, primary_key=True, index=True)
    level = Column(SQLEnum(LogLevel), nullable=False, index=True)
    category = Column(SQLEnum(LogCategory), nullable=False, index=True)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    contact = Column(String(20), nullable=True)
    job_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
