from fastapi import APIRouter

from app.api.routes import health, polar

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(polar.router, tags=["polar"])
