"""Health check endpoint — no auth required."""

from __future__ import annotations

from fastapi import APIRouter, Request

from config.settings import get_settings
from src.api.models.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    settings = get_settings()
    services = getattr(request.app.state, "licensing", None)
    licensing = services.validator.health_check() if services is not None else None
    return HealthResponse(
        status="ok",
        version="0.1.0",
        environment=settings.hrsm_env,
        licensing=licensing,
    )
