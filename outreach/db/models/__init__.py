"""
Database Models
"""
from outreach.db.models.queued_message import QueuedMessage
from outreach.db.models.blacklist_entry import BlacklistEntry
from outreach.db.models.raw_webhook_event import RawWebhookEvent
from outreach.db.models.inbound_message import InboundMessage
from outreach.db.models.gateway_connection import GatewayConnection
from outreach.db.models.alert import Alert, AlertSeverity
from outreach.db.models.log_entry import LogEntry, LogLevel, LogCategory

__all__ = [
    "QueuedMessage",
    "BlacklistEntry",
    "RawWebhookEvent",
    "InboundMessage",
    "GatewayConnection",
    "Alert",
    "AlertSeverity",
    "LogEntry",
    "LogLevel",
    "LogCategory",
]
