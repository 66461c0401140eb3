from fastapi import APIRouter

from donation_engine.api.routes import account, donations, health, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(donations.router, prefix="/donations", tags=["donations"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(account.router, prefix="/account", tags=["account"])
