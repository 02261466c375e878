"""
Progress reporting for render jobs.

Two weighted stages share one 0-100 scale: the first stage (frame capture,
or preparation on the native path) fills [0, W] and encode/mux fills
[W, 100]. Backend-specific progress units never reach the caller.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ProgressStage(str, Enum):
    """Reporting stage a progress value belongs to."""

    CAPTURE = "capture"
    ENCODE = "encode"
    DONE = "done"


class StatusMessage:
    """Human-readable status strings emitted at stage transitions."""

    LOADING_ENCODER = "Loading encoder..."
    PREPARING = "Preparing source media..."
    CAPTURING = "Capturing animation frames..."
    BUILDING_GRAPH = "Building caption filters..."
    ENCODING = "Encoding video..."
    ADDING_AUDIO = "Adding audio..."
    FINALIZING = "Finalizing video..."
    COMPLETE = "Render complete"


@dataclass
class ProgressUpdate:
    """A single progress event."""

    job_id: str
    stage: ProgressStage
    percent: float
    message: str


class ProgressReporter:
    """
    Maps per-stage fractions onto a monotonic 0-100 scale.

    Args:
        job_id: Owning job
        capture_weight: Share of the scale given to the first stage (0-100)
        callback: Receives every emitted ProgressUpdate
    """

    def __init__(
        self,
        job_id: str,
        capture_weight: float,
        callback: Optional[Callable[[ProgressUpdate], None]] = None,
    ):
        if not 0 <= capture_weight <= 100:
            raise ValueError(f"capture_weight must be within [0, 100], got {capture_weight}")
        self.job_id = job_id
        self.capture_weight = capture_weight
        self.callback = callback
        self._percent = 0.0
        self._message = ""
        self._stage = ProgressStage.CAPTURE
        self._closed = False

    @property
    def percent(self) -> float:
        return self._percent

    @property
    def message(self) -> str:
        return self._message

    def status(self, message: str) -> None:
        """Emit a stage transition message at the current value."""
        self._message = message
        self._emit()

    def capture(self, fraction: float, message: Optional[str] = None) -> None:
        """Report first-stage completion as a fraction in [0, 1]."""
        self._stage = ProgressStage.CAPTURE
        self._advance(self.capture_weight * _clamp(fraction), message)

    def encode(self, fraction: float, message: Optional[str] = None) -> None:
        """Report encode/mux completion as a fraction in [0, 1]."""
        self._stage = ProgressStage.ENCODE
        span = 100.0 - self.capture_weight
        self._advance(self.capture_weight + span * _clamp(fraction), message)

    def complete(self, message: str = StatusMessage.COMPLETE) -> None:
        """Emit the final value of exactly 100."""
        self._stage = ProgressStage.DONE
        self._percent = 100.0
        self._message = message
        self._emit()

    def _advance(self, value: float, message: Optional[str]) -> None:
        changed = message is not None and message != self._message
        if message is not None:
            self._message = message
        # Never move backwards and never claim 100 before complete()
        value = min(value, 99.99)
        if value > self._percent or changed:
            self._percent = max(self._percent, value)
            self._emit()

    def close(self) -> None:
        """Stop emitting updates; later reports are dropped."""
        self._closed = True

    def _emit(self) -> None:
        if self._closed or not self.callback:
            return
        try:
            self.callback(ProgressUpdate(
                job_id=self.job_id,
                stage=self._stage,
                percent=self._percent,
                message=self._message,
            ))
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")


def _clamp(fraction: float) -> float:
    return max(0.0, min(1.0, fraction))
