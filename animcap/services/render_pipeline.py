"""
Render Pipeline - Orchestrates caption render jobs end to end.

Workflow:
1. Validate the job (timeline, backend configuration, font catalog)
2. Hand the job to its encoder backend with a job-scoped context
3. Report weighted progress through a single callback
4. Release every resource the job registered, whatever the outcome
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from animcap.config import AspectRatio, Settings, get_settings
from animcap.services.errors import (
    ConfigurationError,
    EmptyTimelineError,
    RenderCancelledError,
    RenderError,
)
from animcap.services.font_catalog import FontCatalog
from animcap.services.native_encoder import StreamingSink
from animcap.services.progress import ProgressReporter, ProgressStage, ProgressUpdate
from animcap.services.render_job import (
    TERMINAL_STATUSES,
    EncoderBackend,
    JobContext,
    JobStatus,
    RenderBackend,
    RenderJob,
    RenderResult,
)
from animcap.services.resource_manager import ResourceManager
from animcap.services.timeline import Timeline

logger = logging.getLogger(__name__)


@dataclass
class RenderJobProgress:
    """Progress update for a render job."""

    job_id: str
    status: JobStatus
    progress_percent: float
    current_step: str
    error: Optional[str] = None
    error_code: Optional[str] = None


class RenderPipeline:
    """
    Runs render jobs on the configured backends.

    Args:
        font_catalog: Process-wide font catalog, None if it failed to load
        backends: Encoder backend per RenderBackend tag
        settings: Service settings
        resource_manager: Tracks per-job resources
        progress_callback: Receives RenderJobProgress on every change
    """

    def __init__(
        self,
        font_catalog: Optional[FontCatalog],
        backends: dict[RenderBackend, EncoderBackend],
        settings: Optional[Settings] = None,
        resource_manager: Optional[ResourceManager] = None,
        progress_callback: Optional[Callable[[RenderJobProgress], None]] = None,
    ):
        self.settings = settings or get_settings()
        self.font_catalog = font_catalog
        self.backends = backends
        self.resource_manager = resource_manager or ResourceManager()
        self.progress_callback = progress_callback
        self._active_jobs: dict[str, RenderJob] = {}

    def create_job(
        self,
        source_location: str,
        timeline: Timeline,
        backend: RenderBackend = RenderBackend.NATIVE_PROCESS,
        aspect_ratio: AspectRatio = "16:9",
        duration_seconds: Optional[float] = None,
        job_id: Optional[str] = None,
    ) -> RenderJob:
        return RenderJob(
            source_location=source_location,
            timeline=timeline,
            backend=backend,
            aspect_ratio=aspect_ratio,
            duration_seconds=duration_seconds,
            job_id=job_id,
        )

    def get_backend(self, kind: RenderBackend) -> EncoderBackend:
        backend = self.backends.get(kind)
        if backend is None:
            raise ConfigurationError(f"Render backend '{kind.value}' is not available")
        return backend

    def validate(self, job: RenderJob) -> EncoderBackend:
        """
        Check that a job can run before any work starts.

        Raises:
            EmptyTimelineError: If the timeline has no segments
            ConfigurationError: If the backend or font catalog is unusable
        """
        if len(job.timeline) == 0:
            raise EmptyTimelineError(field="segments")
        backend = self.get_backend(job.backend)
        backend.check_configuration()
        if self.font_catalog is None:
            raise ConfigurationError("Font catalog is not initialized")
        return backend

    @property
    def active_jobs(self) -> list[str]:
        return list(self._active_jobs)

    def cancel(self, job_id: str, reason: str = "cancelled by user") -> bool:
        """Signal cancellation to a running job. Returns False if it is not running."""
        job = self._active_jobs.get(job_id)
        if job is None:
            return False
        logger.info(f"Job {job_id}: cancellation requested ({reason})")
        job.cancel(reason)
        return True

    async def run(self, job: RenderJob, sink: Optional[StreamingSink] = None) -> RenderResult:
        """
        Run a job to completion.

        Args:
            job: The job to run
            sink: Output sink for streaming backends; closed or failed on exit

        Returns:
            RenderResult of the backend

        Raises:
            RenderError: Any typed failure; the job status reflects it
        """
        job_id = job.job_id
        self._active_jobs[job_id] = job
        resources = self.resource_manager.acquire(job_id)
        reporter: Optional[ProgressReporter] = None

        def set_status(status: JobStatus) -> None:
            job.status = status
            logger.info(f"Job {job_id}: {status.value}")

        def on_progress(update: ProgressUpdate) -> None:
            if job.status in TERMINAL_STATUSES and update.stage != ProgressStage.DONE:
                return
            self._update_progress(job_id, job.status, update.percent, update.message)

        try:
            set_status(JobStatus.VALIDATING)
            self._update_progress(job_id, job.status, 0, "Validating request...")
            backend = self.validate(job)
            job.raise_if_cancelled()

            reporter = ProgressReporter(job_id, backend.capture_weight, on_progress)
            context = JobContext(
                settings=self.settings,
                font_catalog=self.font_catalog,
                resources=resources,
                reporter=reporter,
                set_status=set_status,
                sink=sink,
            )

            try:
                result = await asyncio.wait_for(
                    backend.render(job, context),
                    timeout=self.settings.render_timeout_seconds,
                )
            except asyncio.TimeoutError:
                job.cancel("timeout")
                raise RenderCancelledError(
                    f"timed out after {self.settings.render_timeout_seconds}s"
                ) from None

            set_status(JobStatus.COMPLETED)
            reporter.complete()
            if sink is not None:
                sink.close()
            logger.info(f"Job {job_id} completed ({backend.kind.value})")
            return result

        except (RenderCancelledError, asyncio.CancelledError) as e:
            job.cancel(getattr(e, "reason", "cancelled"))
            set_status(JobStatus.CANCELLED)
            self._update_progress(
                job_id, job.status, self._percent(reporter), "Cancelled",
                error=job.cancel_reason, error_code=RenderCancelledError.code,
            )
            if sink is not None:
                sink.fail(e if isinstance(e, RenderError) else RenderCancelledError(job.cancel_reason))
            raise

        except RenderError as e:
            logger.error(f"Job {job_id} failed [{e.code}]: {e.message}")
            self._fail(job, reporter, sink, e)
            raise

        except Exception as e:
            logger.exception(f"Job {job_id} failed: {e}")
            error = RenderError(str(e))
            self._fail(job, reporter, sink, error)
            raise error from e

        finally:
            if reporter is not None:
                reporter.close()
            self._active_jobs.pop(job_id, None)
            released = await self.resource_manager.release(job_id)
            logger.debug(f"Job {job_id}: released {released} resources")

    def _fail(
        self,
        job: RenderJob,
        reporter: Optional[ProgressReporter],
        sink: Optional[StreamingSink],
        error: RenderError,
    ) -> None:
        job.status = JobStatus.FAILED
        self._update_progress(
            job.job_id, job.status, self._percent(reporter), "Processing failed",
            error=error.message, error_code=error.code,
        )
        if sink is not None:
            sink.fail(error)

    @staticmethod
    def _percent(reporter: Optional[ProgressReporter]) -> float:
        return reporter.percent if reporter else 0

    def _update_progress(
        self,
        job_id: str,
        status: JobStatus,
        progress: float,
        step: str,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> None:
        """Update job progress via callback."""
        if self.progress_callback:
            try:
                self.progress_callback(RenderJobProgress(
                    job_id=job_id,
                    status=status,
                    progress_percent=progress,
                    current_step=step,
                    error=error,
                    error_code=error_code,
                ))
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")
