"""
Messaging query endpoints for the admin UI.

Read-only except alert acknowledgement. Every endpoint requires the
X-Admin-API-Key header.
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from outreach.api.dependencies.admin_auth import require_admin_api_key
from outreach.api.dependencies.pipeline import get_pipeline
from outreach.core.exceptions import ErrorCode, NotFoundException
from outreach.core.logging import get_logger
from outreach.db.models.log_entry import LogCategory, LogLevel
from outreach.domain.services.health_monitor import alert_summary
from outreach.runtime import Pipeline

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


# ─── Pydantic models ────────────────────────────────────────────────────────

class QueueStatsResponse(BaseModel):
    pending: int
    processing: int
    sent: int = Field(description="sent, including delivered and read")
    delivered: int
    read: int
    failed: int
    cancelled: int
    total_today: int
    avg_processing_seconds: float


class LogEntryResponse(BaseModel):
    id: int
    level: str
    category: str
    message: str
    details: Optional[dict[str, Any]] = None
    contact: Optional[str] = None
    job_id: Optional[int] = None
    created_at: datetime


class AlertResponse(BaseModel):
    id: int
    rule_id: str
    severity: str
    message: str
    triggered_at: Optional[str] = None
    acknowledged: bool


class AcknowledgeRequest(BaseModel):
    acknowledged_by: str = Field(min_length=1, max_length=100)
    note: Optional[str] = Field(default=None, max_length=1000)


class AcknowledgeResponse(BaseModel):
    success: bool
    alert_id: int


# ─── Endpoints ──────────────────────────────────────────────────────────────

@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(pipeline: Pipeline = Depends(get_pipeline)) -> QueueStatsResponse:
    stats = await pipeline.queue.stats()
    return QueueStatsResponse(**stats.to_dict())


@router.get("/compliance/stats")
async def compliance_stats(pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
    stats = await pipeline.compliance.stats()
    stats["next_window_start"] = stats["next_window_start"].isoformat()
    return stats


@router.get("/health")
async def system_health(pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
    """Fresh snapshot; does not trigger alerts."""
    snapshot = await pipeline.monitor.check_health()
    return snapshot.to_dict()


@router.get("/logs", response_model=list[LogEntryResponse])
async def recent_logs(
    level: Optional[LogLevel] = None,
    category: Optional[LogCategory] = None,
    since: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=500),
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[LogEntryResponse]:
    entries = await pipeline.activity_log.recent(
        level=level, category=category, since=since, limit=limit
    )
    return [
        LogEntryResponse(
            id=e.id,
            level=e.level.value,
            category=e.category.value,
            message=e.message,
            details=e.details,
            contact=e.contact,
            job_id=e.job_id,
            created_at=e.created_at,
        )
        for e in entries
    ]


@router.get("/alerts", response_model=list[AlertResponse])
async def active_alerts(
    limit: int = Query(default=50, ge=1, le=200),
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[AlertResponse]:
    alerts = await pipeline.alerts.active_alerts(limit)
    return [AlertResponse(**alert_summary(a)) for a in alerts]


@router.get("/events")
async def recent_events(
    limit: int = Query(default=50, ge=1, le=100),
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[dict[str, Any]]:
    """Latest pipeline events, newest first. Empty when Redis forwarding is off."""
    if pipeline.publisher is None:
        return []
    return await pipeline.publisher.history(limit)


@router.post("/alerts/{alert_id}/acknowledge", response_model=AcknowledgeResponse)
async def acknowledge_alert(
    alert_id: int,
    body: AcknowledgeRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> AcknowledgeResponse:
    acknowledged = await pipeline.alerts.acknowledge_alert(alert_id, body.acknowledged_by, body.note)
    if not acknowledged:
        raise NotFoundException("Unacknowledged alert", alert_id, ErrorCode.ALERT_NOT_FOUND)
    return AcknowledgeResponse(success=True, alert_id=alert_id)
