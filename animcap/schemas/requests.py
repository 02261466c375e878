"""
Request schemas for the render API.

Field names follow the camelCase wire format; snake_case names are accepted
as well.
"""

from typing import Optional

from pydantic import BaseModel, Field, HttpUrl, model_validator

from animcap.config import AspectRatio
from animcap.services.render_job import RenderBackend
from animcap.services.timeline import AnimationKind, Segment


class SegmentInput(BaseModel):
    """A caption segment as submitted by the client."""

    text: str = Field(..., description="Caption text")
    start_time: float = Field(..., alias="startTime", ge=0, description="Start time in seconds")
    end_time: float = Field(..., alias="endTime", description="End time in seconds")
    animations: list[AnimationKind] = Field(
        default_factory=list, description="Animation directives applied to the caption"
    )
    emotion: Optional[str] = Field(
        default=None, description="Emotion label from upstream classification (informational)"
    )
    font_family: Optional[str] = Field(
        default=None, alias="fontFamily", description="Font family; defaults to the catalog default"
    )

    class Config:
        populate_by_name = True

    @model_validator(mode="after")
    def validate_time_window(self) -> "SegmentInput":
        """Ensure the segment has a positive duration."""
        if self.end_time <= self.start_time:
            raise ValueError(
                f"endTime ({self.end_time}) must be greater than startTime ({self.start_time})"
            )
        return self

    def to_segment(self) -> Segment:
        return Segment(
            text=self.text,
            start_time=self.start_time,
            end_time=self.end_time,
            animations=frozenset(self.animations),
            font_family=self.font_family,
        )


class RenderVideoRequest(BaseModel):
    """Request body for POST /render-video."""

    media_url: HttpUrl = Field(..., alias="mediaUrl", description="http(s) URL of the source media")
    segments: list[SegmentInput] = Field(..., min_length=1, description="Caption segments")
    aspect_ratio: AspectRatio = Field(
        default="16:9", alias="aspectRatio", description="Canvas aspect ratio for audio-only sources"
    )
    duration_seconds: Optional[float] = Field(
        default=None, alias="durationSeconds", gt=0, description="Explicit output duration in seconds"
    )

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "mediaUrl": "https://example.com/media/interview.mp4",
                "segments": [
                    {"text": "Hello there", "startTime": 0.0, "endTime": 1.5, "animations": ["fadeIn"]},
                    {"text": "Welcome back", "startTime": 1.5, "endTime": 3.0, "animations": ["bounceLetters"]},
                ],
                "aspectRatio": "16:9",
            }
        }


class RenderJobSubmitRequest(RenderVideoRequest):
    """Request body for POST /render-jobs."""

    backend: RenderBackend = Field(
        default=RenderBackend.EMBEDDED, description="Encoder backend: 'embedded' or 'native'"
    )
