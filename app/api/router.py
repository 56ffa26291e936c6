from fastapi import APIRouter

from api.auth import router as auth_router
from api.billing import router as billing_router
from api.payments import router as payments_router
from api.webhooks import router as webhooks_router
from api.scheduler import router as scheduler_router
from api.admin import router as admin_router

api_router = APIRouter()
api_router.include_router(auth_router)
api_router.include_router(billing_router)
api_router.include_router(payments_router)
api_router.include_router(webhooks_router)
api_router.include_router(scheduler_router)
api_router.include_router(admin_router)
