"""
Health check endpoints for the caption renderer.
"""

import importlib.util

from fastapi import APIRouter, Request

from animcap.config import SERVICE_VERSION, get_settings
from animcap.schemas.responses import HealthResponse, ReadinessResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(
        status="healthy",
        version=SERVICE_VERSION,
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    The service is ready when fonts are loaded and at least one encoder
    backend can run.
    """
    settings = get_settings()
    font_catalog = getattr(request.app.state, "font_catalog", None)
    embedded_module = getattr(request.app.state, "embedded_module", None)

    fonts_ready = font_catalog is not None
    native_ready = bool(settings.ffmpeg_path and settings.ffprobe_path)
    if embedded_module is not None and embedded_module.is_loaded:
        embedded_status = "loaded"
    elif importlib.util.find_spec(settings.embedded_module_name) is not None:
        embedded_status = "available"
    else:
        embedded_status = "not_installed"

    return ReadinessResponse(
        ready=fonts_ready and (native_ready or embedded_status != "not_installed"),
        font_catalog="ready" if fonts_ready else "not_loaded",
        native_encoder="configured" if native_ready else "not_configured",
        embedded_encoder=embedded_status,
        font_families=font_catalog.families if fonts_ready else [],
    )
