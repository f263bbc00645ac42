"""
Gateway Webhook - delivery status, inbound replies and connectivity callbacks.

The gateway retries on anything but 200, so the endpoint acknowledges every
request. Bodies that are not JSON are stored as-is for inspection.
"""
import json

from fastapi import APIRouter, Depends, Request

from outreach.api.dependencies.pipeline import get_pipeline
from outreach.core.logging import get_logger
from outreach.runtime import Pipeline

logger = get_logger(__name__)

router = APIRouter()


@router.post("")
async def gateway_webhook(
    request: Request,
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict[str, bool]:
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else {}
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Gateway webhook body is not JSON", extra_data={"size": len(raw)})
        payload = raw.decode("utf-8", errors="replace")

    return await pipeline.webhooks.receive(payload)
