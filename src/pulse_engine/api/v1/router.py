"""Main API router for v1."""

from fastapi import APIRouter

from pulse_engine.api.v1.endpoints import analyses, fixes, websockets

api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(analyses.router, prefix="/analyses", tags=["Analyses"])
api_router.include_router(fixes.router, prefix="/fixes", tags=["Fixes"])
api_router.include_router(websockets.router, tags=["Real-time"])
