"""
Render job model and the encoder backend contract.

A RenderJob is created per request and selects its backend through an
explicit RenderBackend tag. Both backends implement EncoderBackend.render
and receive everything job-scoped through a JobContext.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol

from animcap.config import AspectRatio, Settings
from animcap.services.errors import RenderCancelledError
from animcap.services.font_catalog import FontCatalog
from animcap.services.progress import ProgressReporter
from animcap.services.resource_manager import JobResources
from animcap.services.timeline import Timeline


class RenderBackend(str, Enum):
    """Encoder backend a job runs on."""

    NATIVE_PROCESS = "native"
    EMBEDDED = "embedded"


class JobStatus(str, Enum):
    """Status of a render job."""

    PENDING = "pending"
    VALIDATING = "validating"
    PREPARING = "preparing"
    SAMPLING = "sampling"
    BUILDING_GRAPH = "building_graph"
    ENCODING = "encoding"
    MUXING = "muxing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass
class RenderJob:
    """A single render request and its runtime state."""

    source_location: str
    timeline: Timeline
    backend: RenderBackend = RenderBackend.NATIVE_PROCESS
    output_format: str = "mp4"
    aspect_ratio: AspectRatio = "16:9"
    duration_seconds: Optional[float] = None
    job_id: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    cancel_reason: Optional[str] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def __post_init__(self):
        if self.job_id is None:
            self.job_id = str(uuid.uuid4())

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self.cancel_event.is_set():
            self.cancel_reason = reason
            self.cancel_event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise RenderCancelledError(self.cancel_reason or "cancelled")


@dataclass
class RenderResult:
    """Final result of a render job."""

    job_id: str
    backend: RenderBackend
    duration_seconds: float
    output_path: Optional[str] = None
    bytes_written: int = 0
    has_audio: bool = False
    audio_fallback: bool = False
    frame_count: int = 0


class OutputSink(Protocol):
    """Receives encoded output bytes as they are produced."""

    async def write(self, chunk: bytes) -> None:
        ...


@dataclass
class JobContext:
    """Job-scoped collaborators handed to a backend."""

    settings: Settings
    font_catalog: FontCatalog
    resources: JobResources
    reporter: ProgressReporter
    set_status: Callable[[JobStatus], None]
    sink: Optional[OutputSink] = None


class EncoderBackend(ABC):
    """Renders a job into a finished video artifact."""

    kind: RenderBackend

    @property
    def capture_weight(self) -> float:
        """Share of the progress scale taken by the first stage."""
        return 50.0

    def check_configuration(self) -> None:
        """Raise ConfigurationError when the backend cannot run at all."""

    @abstractmethod
    async def render(self, job: RenderJob, context: JobContext) -> RenderResult:
        ...

