"""
Blacklist Entry Model - contacts that must never be messaged again

One row per contact. Opt-out replies and manual blocks both upsert here.
"""
from datetime import datetime
from sqlalchemy import Column, DateTime, String

from outreach.db.database import Base


class BlacklistEntry(Base):
    """Blocked contact"""

    __tablename__ = "contact_blacklist"

    contact = Column(String(20), primary_key=True)
    reason = Column(String(500), nullable=False, default="opt-out")

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow)
