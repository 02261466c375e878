"""
Configuration module using Pydantic Settings for environment variable management.

Only essential environment variables are exposed. All other settings are hardcoded
for consistency and simplicity.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings

SERVICE_VERSION = "1.0.0"

AspectRatio = Literal["16:9", "9:16"]


class OverlayStyle:
    """Animated caption overlay styling (hardcoded)."""

    font_size: int = 64
    primary_color: tuple[int, int, int, int] = (255, 255, 255, 255)
    highlight_color: tuple[int, int, int, int] = (255, 215, 0, 255)  # Gold
    shadow_color: tuple[int, int, int, int] = (0, 0, 0, 204)
    shadow_offset: int = 3
    glow_color: tuple[int, int, int, int] = (255, 255, 255, 255)
    glow_radius: int = 12
    line_spacing: int = 8
    segment_gap: int = 16
    max_text_width_ratio: float = 0.9
    background_color: tuple[int, int, int] = (0, 0, 0)


class DrawTextStyle:
    """Fixed drawtext styling for the native filter-graph path (hardcoded)."""

    font_color: str = "white"
    font_size: int = 48
    box: bool = True
    box_color: str = "black@0.5"
    box_border_width: int = 10
    x: str = "(w-text_w)/2"
    y: str = "(h-text_h)/2"


def get_overlay_style(aspect_ratio: AspectRatio) -> OverlayStyle:
    """
    Get the overlay style for an output aspect ratio.

    Args:
        aspect_ratio: "16:9" (landscape) or "9:16" (portrait)

    Returns:
        Configured OverlayStyle

    Raises:
        ValueError: If aspect_ratio is not recognized
    """
    if aspect_ratio == "16:9":
        return OverlayStyle()
    if aspect_ratio == "9:16":
        # Narrower frame: smaller text, tighter wrap
        style = OverlayStyle()
        style.font_size = 52
        style.max_text_width_ratio = 0.85
        return style
    raise ValueError(f"Unknown aspect ratio: {aspect_ratio}. Valid: ['16:9', '9:16']")


class Settings(BaseSettings):
    """
    Application settings.

    Only essential configuration is loaded from environment variables.
    All processing/rendering settings are hardcoded for consistency.
    """

    # ============================================================
    # ENVIRONMENT VARIABLES (minimal set)
    # ============================================================

    # Application
    app_name: str = "animcap"
    debug: bool = False
    log_level: str = "INFO"

    # External encoder (native backend)
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    fontconfig_file: Optional[str] = None  # Minimal fontconfig for ffmpeg's drawtext

    # Fonts
    fonts_directory: str = "fonts"
    default_font_family: str = "roboto-bold"

    # Security - API authentication
    animcap_api_key: Optional[str] = None

    # Performance tuning
    max_render_workers: int = 2  # Max concurrent render jobs
    render_timeout_seconds: float = 900.0

    # Frame sampling settle policy (embedded backend)
    seek_settle_seconds: float = 0.0
    repaint_settle_seconds: float = 0.0

    # Embedded encoder module (imported once per process)
    embedded_module_name: str = "av"

    # ============================================================
    # HARDCODED SETTINGS (not configurable via env vars)
    # ============================================================

    @property
    def max_concurrent_renders(self) -> int:
        return self.max_render_workers

    @property
    def temp_directory(self) -> str:
        return "/tmp/animcap"

    @property
    def output_directory(self) -> str:
        return "/tmp/animcap/output"

    @property
    def job_retention_seconds(self) -> float:
        return 3600.0  # Finished jobs and their output are kept for an hour

    # Rendering
    @property
    def frame_rate(self) -> int:
        return 25

    @property
    def embedded_capture_weight(self) -> float:
        return 50.0  # Frame capture: first 50% of reported progress

    @property
    def native_capture_weight(self) -> float:
        return 25.0  # Probe + filter graph: first 25%

    @property
    def max_pending_frame_writes(self) -> int:
        return 8

    @property
    def ffmpeg_preset(self) -> str:
        return "veryfast"

    @property
    def ffmpeg_crf(self) -> int:
        return 20

    def get_output_size(self, aspect_ratio: AspectRatio) -> tuple[int, int]:
        """Output (width, height) when there is no source video to follow."""
        if aspect_ratio == "9:16":
            return (720, 1280)
        return (1280, 720)

    # Streaming / IO
    @property
    def stream_chunk_size(self) -> int:
        return 64 * 1024

    @property
    def media_fetch_timeout_seconds(self) -> float:
        return 300.0

    @property
    def probe_timeout_seconds(self) -> float:
        return 30.0

    @property
    def diagnostics_tail_lines(self) -> int:
        return 40

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
