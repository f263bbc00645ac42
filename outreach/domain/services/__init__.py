"""
Domain Services
"""
from outreach.domain.services.activity_log_service import ActivityLogService
from outreach.domain.services.alert_service import AlertService
from outreach.domain.services.compliance_service import ComplianceService
from outreach.domain.services.health_monitor import HealthMonitor
from outreach.domain.services.message_queue_service import MessageQueueService
from outreach.domain.services.webhook_processor import WebhookProcessor

__all__ = [
    "ActivityLogService",
    "AlertService",
    "ComplianceService",
    "HealthMonitor",
    "MessageQueueService",
    "WebhookProcessor",
]
