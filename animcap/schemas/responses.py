"""
Response schemas for the render API.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    status: str = Field(..., description="Service health status")
    version: str = Field(..., description="Service version")


class ReadinessResponse(BaseModel):
    """Response for readiness check endpoint."""

    ready: bool = Field(..., description="Whether the service can accept render requests")
    font_catalog: str = Field(..., description="Font catalog status")
    native_encoder: str = Field(..., description="FFmpeg configuration status")
    embedded_encoder: str = Field(..., description="Embedded encoder module status")
    font_families: list[str] = Field(default_factory=list, description="Loaded font families")


class ErrorResponse(BaseModel):
    """Error body returned for failed requests."""

    error: str = Field(..., description="User-facing error message")
    code: Optional[str] = Field(default=None, description="Machine-readable error code")
    details: Optional[list[dict[str, Any]]] = Field(
        default=None, description="Per-field validation errors"
    )


class RenderJobSubmitResponse(BaseModel):
    """Response after submitting a render job."""

    job_id: str
    status: str
    backend: str
    message: str


class RenderJobStatusResponse(BaseModel):
    """Response for job status query."""

    job_id: str
    status: str
    progress_percent: float
    current_step: str
    error: Optional[str] = None
    error_code: Optional[str] = None
    output_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    has_audio: Optional[bool] = None
    audio_fallback: Optional[bool] = None
