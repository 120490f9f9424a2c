"""Routers for the inkflow FastAPI application."""

from __future__ import annotations

from fastapi import APIRouter

from .events import router as events_router
from .stages import pipeline_router
from .stages import router as stages_router


def build_api_router() -> APIRouter:
    """Combine all API routers for inclusion in the FastAPI app."""
    router = APIRouter()
    router.include_router(events_router, prefix="/events", tags=["events"])
    router.include_router(stages_router, prefix="/stages", tags=["stages"])
    router.include_router(pipeline_router, prefix="/pipeline", tags=["pipeline"])
    return router


__all__ = ["build_api_router"]
