"""Top-level API router — mounts all domain routers under /api."""

from fastapi import APIRouter

from marketbrewer.api.routes import kalshi, system

api_router = APIRouter()
api_router.include_router(system.router, tags=["system"])
api_router.include_router(kalshi.router, prefix="/kalshi", tags=["kalshi"])
