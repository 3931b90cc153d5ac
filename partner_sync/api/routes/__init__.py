"""
API Routes
"""
from fastapi import APIRouter

from partner_sync.api.routes.queue import router as queue_router
from partner_sync.api.routes.scheduler import router as scheduler_router
from partner_sync.api.webhooks.partner import router as partner_webhook_router

router = APIRouter()

router.include_router(partner_webhook_router, tags=["Webhooks"])
router.include_router(scheduler_router, prefix="/cron", tags=["Scheduler"])
router.include_router(queue_router, prefix="/queue", tags=["Queue"])
