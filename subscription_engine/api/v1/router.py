"""Version 1 API router."""
from fastapi import APIRouter

from subscription_engine.api.v1.endpoints import subscriptions, usage

api_router = APIRouter()
api_router.include_router(subscriptions.router)
api_router.include_router(usage.router)
