"""
Pydantic schemas for request/response models.
"""

from animcap.schemas.requests import RenderJobSubmitRequest, RenderVideoRequest, SegmentInput
from animcap.schemas.responses import (
    ErrorResponse,
    HealthResponse,
    ReadinessResponse,
    RenderJobStatusResponse,
    RenderJobSubmitResponse,
)

__all__ = [
    "SegmentInput",
    "RenderVideoRequest",
    "RenderJobSubmitRequest",
    "ErrorResponse",
    "HealthResponse",
    "ReadinessResponse",
    "RenderJobSubmitResponse",
    "RenderJobStatusResponse",
]
