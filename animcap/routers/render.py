"""
Render API Router - Endpoints for captioned video rendering.

POST /render-video streams the native backend's output as it is produced.
POST /render-jobs runs a render in the background (embedded backend by
default) and the result is fetched from /render-jobs/{job_id}/output.
"""

import asyncio
import logging
import os
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.responses import FileResponse, StreamingResponse

from animcap.auth import verify_api_key
from animcap.config import get_settings
from animcap.schemas.requests import RenderJobSubmitRequest, RenderVideoRequest, SegmentInput
from animcap.schemas.responses import RenderJobStatusResponse, RenderJobSubmitResponse
from animcap.services.errors import RenderError
from animcap.services.native_encoder import StreamingSink
from animcap.services.render_job import TERMINAL_STATUSES, JobStatus, RenderBackend, RenderJob, RenderResult
from animcap.services.render_pipeline import RenderJobProgress, RenderPipeline
from animcap.services.timeline import Timeline, build_timeline

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Render"])


# ============================================================================
# In-Memory Job Storage
# ============================================================================

_jobs: dict[str, RenderJob] = {}
_job_store: dict[str, RenderJobProgress] = {}
_job_results: dict[str, RenderResult] = {}

# Pending expiry tasks, held so they are not garbage collected
_expiry_tasks: set[asyncio.Task] = set()

# Semaphore for limiting concurrent renders
_render_semaphore: Optional[asyncio.Semaphore] = None


def get_render_semaphore() -> asyncio.Semaphore:
    """Get or create render semaphore."""
    global _render_semaphore
    if _render_semaphore is None:
        _render_semaphore = asyncio.Semaphore(get_settings().max_concurrent_renders)
    return _render_semaphore


def progress_callback(progress: RenderJobProgress) -> None:
    """Callback to store job progress."""
    _job_store[progress.job_id] = progress
    logger.debug(f"Job {progress.job_id}: {progress.status.value} - {progress.progress_percent:.0f}%")


# ============================================================================
# Dependencies
# ============================================================================


async def get_render_pipeline(request: Request) -> RenderPipeline:
    """Get the render pipeline from app state (initialized at startup)."""
    pipeline = getattr(request.app.state, "render_pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Render pipeline not initialized",
        )
    return pipeline


def _to_timeline(segments: list[SegmentInput]) -> Timeline:
    return build_timeline(segment.to_segment() for segment in segments)


def _consume_result(task: asyncio.Task) -> None:
    # Failures reach the client through the sink and are logged by the pipeline
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Render task ended with {type(task.exception()).__name__}")


async def _run_limited(pipeline: RenderPipeline, job: RenderJob, sink: Optional[StreamingSink] = None) -> RenderResult:
    async with get_render_semaphore():
        return await pipeline.run(job, sink)


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/render-video")
async def render_video(
    request: RenderVideoRequest,
    pipeline: RenderPipeline = Depends(get_render_pipeline),
    _: None = Depends(verify_api_key),
) -> StreamingResponse:
    """
    Render captions onto the source media and stream the MP4 back.

    The response starts as soon as the encoder produces its first bytes.
    Failures before that point return a JSON error with the mapped status.
    """
    timeline = _to_timeline(request.segments)
    job = pipeline.create_job(
        source_location=str(request.media_url),
        timeline=timeline,
        backend=RenderBackend.NATIVE_PROCESS,
        aspect_ratio=request.aspect_ratio,
        duration_seconds=request.duration_seconds,
    )
    logger.info(f"Job {job.job_id}: streaming render of {len(timeline)} segments from {job.source_location[:100]}")

    sink = StreamingSink()
    task = asyncio.create_task(_run_limited(pipeline, job, sink))
    task.add_done_callback(_consume_result)
    task.add_done_callback(lambda _: _schedule_expiry(job.job_id))

    try:
        first_chunk = await sink.get()
    except BaseException:
        job.cancel("request aborted")
        raise

    async def stream():
        try:
            if first_chunk is not None:
                yield first_chunk
            async for chunk in sink.chunks():
                yield chunk
        except RenderError as e:
            logger.error(f"Job {job.job_id}: stream aborted after first byte: {e.message}")
            raise
        finally:
            if not task.done():
                job.cancel("client disconnected")

    return StreamingResponse(
        stream(),
        media_type="video/mp4",
        headers={"X-Render-Job-Id": job.job_id},
    )


@router.post("/render-jobs", response_model=RenderJobSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_render_job(
    request: RenderJobSubmitRequest,
    background_tasks: BackgroundTasks,
    pipeline: RenderPipeline = Depends(get_render_pipeline),
    _: None = Depends(verify_api_key),
) -> RenderJobSubmitResponse:
    """
    Submit a background render job.

    Use GET /render-jobs/{job_id} to check status.
    """
    timeline = _to_timeline(request.segments)
    job = pipeline.create_job(
        source_location=str(request.media_url),
        timeline=timeline,
        backend=request.backend,
        aspect_ratio=request.aspect_ratio,
        duration_seconds=request.duration_seconds,
    )

    # Fail fast on configuration problems instead of queueing a doomed job
    pipeline.validate(job)

    _jobs[job.job_id] = job
    _job_store[job.job_id] = RenderJobProgress(
        job_id=job.job_id,
        status=JobStatus.PENDING,
        progress_percent=0,
        current_step="Queued for rendering",
    )
    background_tasks.add_task(_process_job_background, pipeline, job)

    logger.info(f"Job {job.job_id} submitted ({job.backend.value}) for {job.source_location[:100]}")

    return RenderJobSubmitResponse(
        job_id=job.job_id,
        status="accepted",
        backend=job.backend.value,
        message="Job queued for rendering",
    )


@router.get("/render-jobs/{job_id}", response_model=RenderJobStatusResponse)
async def get_render_job_status(job_id: str) -> RenderJobStatusResponse:
    """
    Get the status of a render job.

    Args:
        job_id: The job ID returned from POST /render-jobs

    Returns:
        Current job status, progress, and output details if completed
    """
    progress = _job_store.get(job_id)
    if progress is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job not found: {job_id}",
        )

    response = RenderJobStatusResponse(
        job_id=job_id,
        status=progress.status.value,
        progress_percent=progress.progress_percent,
        current_step=progress.current_step,
        error=progress.error,
        error_code=progress.error_code,
    )

    result = _job_results.get(job_id)
    if result is not None:
        response.output_url = f"/render-jobs/{job_id}/output" if result.output_path else None
        response.duration_seconds = result.duration_seconds
        response.has_audio = result.has_audio
        response.audio_fallback = result.audio_fallback
    return response


@router.get("/render-jobs/{job_id}/output")
async def get_render_job_output(job_id: str) -> FileResponse:
    """Download the finished MP4 of a completed job."""
    if job_id not in _job_store:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job not found: {job_id}",
        )

    result = _job_results.get(job_id)
    if result is None or not result.output_path:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} has no output (status: {_job_store[job_id].status.value})",
        )
    if not os.path.isfile(result.output_path):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Output file not found",
        )

    return FileResponse(
        path=result.output_path,
        media_type="video/mp4",
        filename=os.path.basename(result.output_path),
    )


@router.delete("/render-jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_render_job(
    job_id: str,
    _: None = Depends(verify_api_key),
) -> None:
    """
    Cancel a pending or running job.

    Running jobs stop at their next cancellation point and release all
    resources.
    """
    job = _jobs.get(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job not found: {job_id}",
        )
    if job.status in TERMINAL_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job already finished: {job.status.value}",
        )

    job.cancel("cancelled by user")
    logger.info(f"Job {job_id}: cancellation requested")


# ============================================================================
# Background Processing
# ============================================================================


async def _process_job_background(pipeline: RenderPipeline, job: RenderJob) -> None:
    """Run a submitted job and store its result."""
    try:
        _job_results[job.job_id] = await _run_limited(pipeline, job)
    except RenderError as e:
        logger.info(f"Job {job.job_id} ended {job.status.value}: {e.code}")
    finally:
        _schedule_expiry(job.job_id)


def _schedule_expiry(job_id: str) -> None:
    task = asyncio.get_running_loop().create_task(_expire_job(job_id, get_settings().job_retention_seconds))
    _expiry_tasks.add(task)
    task.add_done_callback(_expiry_tasks.discard)


async def _expire_job(job_id: str, delay: float) -> None:
    """Forget a finished job and delete its output once the retention window passes."""
    await asyncio.sleep(delay)
    _jobs.pop(job_id, None)
    _job_store.pop(job_id, None)
    result = _job_results.pop(job_id, None)
    if result is not None and result.output_path:
        try:
            os.remove(result.output_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to delete output of job {job_id}: {e}")
    logger.debug(f"Job {job_id}: expired")
