"""
API Routes
"""
from fastapi import APIRouter

from outreach.api.routes.messaging import router as messaging_router
from outreach.api.webhooks.gateway import router as gateway_router

router = APIRouter()

router.include_router(messaging_router, prefix="/messaging", tags=["messaging"])
router.include_router(gateway_router, prefix="/webhooks/gateway", tags=["webhooks"])
