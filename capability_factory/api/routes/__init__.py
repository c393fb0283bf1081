from fastapi import APIRouter

from capability_factory.api.routes import factory, health, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(factory.router, prefix="/factory", tags=["factory"])
api_router.include_router(webhooks.router, prefix="/github", tags=["github"])
