"""
FastAPI application entry point for animcap.

animcap renders animated captions onto audio/video sources through one of
two encoder backends:
1. Native: FFmpeg subprocess with a drawtext filter chain, streamed output
2. Embedded: in-process PyAV encode of sampled overlay frames
"""

import logging
import os
import shutil
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from animcap.config import SERVICE_VERSION, get_settings
from animcap.routers import health, render
from animcap.services.embedded_encoder import EmbeddedBackend, EmbeddedEncoderModule
from animcap.services.errors import ConfigurationError, RenderError, RenderValidationError
from animcap.services.font_catalog import initialize_font_catalog
from animcap.services.media_source import MediaFetcher
from animcap.services.native_encoder import NativeProcessBackend
from animcap.services.render_job import RenderBackend
from animcap.services.render_pipeline import RenderPipeline
from animcap.services.resource_manager import ResourceManager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for startup and shutdown events.
    Loads fonts and wires the encoder backends on startup; cancels running
    jobs and cleans up on shutdown.
    """
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info("Starting animcap...")

    os.makedirs(settings.temp_directory, exist_ok=True)
    os.makedirs(settings.output_directory, exist_ok=True)
    logger.info(f"Temp directory: {settings.temp_directory}")
    logger.info(f"Max concurrent renders: {settings.max_concurrent_renders}")

    # Missing fonts must not crash startup; render requests fail with 503 instead
    try:
        font_catalog = initialize_font_catalog(settings.fonts_directory, settings.default_font_family)
    except ConfigurationError as e:
        logger.error(f"Font catalog unavailable: {e.message}")
        font_catalog = None

    embedded_module = EmbeddedEncoderModule(settings.embedded_module_name)
    fetcher = MediaFetcher()
    pipeline = RenderPipeline(
        font_catalog=font_catalog,
        backends={
            RenderBackend.NATIVE_PROCESS: NativeProcessBackend(settings, fetcher=fetcher),
            RenderBackend.EMBEDDED: EmbeddedBackend(embedded_module, settings, fetcher=fetcher),
        },
        settings=settings,
        resource_manager=ResourceManager(),
        progress_callback=render.progress_callback,
    )

    # Store in app state for dependency injection
    app.state.font_catalog = font_catalog
    app.state.embedded_module = embedded_module
    app.state.render_pipeline = pipeline

    _verify_external_tools()

    logger.info("animcap ready to accept requests.")

    yield

    # Cleanup on shutdown
    logger.info("Shutting down animcap...")
    for job_id in pipeline.active_jobs:
        pipeline.cancel(job_id, "service shutdown")
    app.state.render_pipeline = None

    if os.path.isdir(settings.temp_directory):
        try:
            shutil.rmtree(settings.temp_directory)
        except OSError as e:
            logger.warning(f"Failed to clean up temp directory: {e}")

    logger.info("Shutdown complete")


def _verify_external_tools():
    """Verify that the configured encoder binaries are available."""
    settings = get_settings()
    tools = {
        "FFMPEG_PATH": (settings.ffmpeg_path, "FFmpeg for native rendering"),
        "FFPROBE_PATH": (settings.ffprobe_path, "FFprobe for source analysis"),
    }

    for variable, (path, description) in tools.items():
        if not path:
            logger.warning(f"✗ {variable} not set - native backend disabled")
        elif shutil.which(path):
            logger.info(f"✓ {description} available")
        else:
            logger.warning(f"✗ {description} NOT FOUND at {path} - native renders will fail")


# Create FastAPI application
app = FastAPI(
    title="animcap",
    description="""
animcap - animated caption renderer.

Draws timed, animated text captions onto audio or video sources.

## Backends

### Native (`POST /render-video`)
- FFmpeg subprocess with a drawtext filter chain
- Source streamed in, MP4 streamed back as it is encoded

### Embedded (`POST /render-jobs`)
- Overlay frames sampled with Pillow (fade, slide, bounce, karaoke...)
- Encoded in-process with PyAV, source audio muxed back in

## Usage

1. Submit a job: `POST /render-jobs`
2. Poll status: `GET /render-jobs/{job_id}`
3. Download: `GET /render-jobs/{job_id}/output`
    """,
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Map request body validation failures to 400."""
    details = [
        {"loc": list(error.get("loc", [])), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": RenderValidationError.user_message, "details": details},
    )


@app.exception_handler(RenderError)
async def render_exception_handler(request: Request, exc: RenderError) -> JSONResponse:
    """Map typed render failures to their HTTP status."""
    if isinstance(exc, RenderValidationError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": RenderValidationError.user_message, "code": exc.code, "details": exc.details()},
        )
    logger.warning(f"Render request failed [{exc.code}]: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.user_message, "code": exc.code},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(render.router)


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    settings = get_settings()
    return {
        "service": settings.app_name,
        "version": SERVICE_VERSION,
        "status": "running",
        "backends": {
            "native": "FFmpeg drawtext filter graph (streaming)",
            "embedded": "Pillow frame sampling + PyAV encode",
        },
        "docs": "/docs",
    }
