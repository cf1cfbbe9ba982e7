from fastapi import APIRouter

from app.api.routes import billing, health, subscription

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(billing.router, tags=["billing"])
api_router.include_router(subscription.router, prefix="/subscription", tags=["subscription"])
