"""
Frame Sampler - captures the animated overlay one output tick at a time.

Used by the embedded backend. For every frame index the sampler seeks the
source media, repaints the overlay for exactly the segments active at that
instant, waits for the repaint to settle and captures a snapshot. PNG
encoding of captured frames runs in the default executor while sampling
continues, but a frame is always captured before the surface is touched
for the next one.
"""

import asyncio
import io
import logging
import math
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from PIL import Image

from animcap.services.errors import CaptureError
from animcap.services.timeline import Segment, Timeline

logger = logging.getLogger(__name__)

# Absorbs float error such as 2.3 * 10 == 22.999999999999996
_FRAME_COUNT_EPSILON = 1e-9

FrameWriter = Callable[[int, bytes], Awaitable[None]]


class SamplerState(str, Enum):
    """Lifecycle of a FrameSampler."""

    IDLE = "idle"
    SAMPLING = "sampling"
    DONE = "done"
    ABORTED = "aborted"


class OverlaySurface(Protocol):
    """Visual layer the sampler repaints and captures."""

    def update(self, segments: Sequence[Segment], time_seconds: float) -> None:
        ...

    def capture(self) -> Image.Image:
        ...


class Playhead:
    """
    Source-media playback position.

    Hosts without a seek completion signal get a fixed settle interval after
    every seek. Subclasses with a real signal override wait_for_seek.

    Args:
        settle_seconds: Minimum suspension after each seek
    """

    def __init__(self, settle_seconds: float = 0.0):
        self.settle_seconds = settle_seconds
        self.position = 0.0

    async def seek(self, time_seconds: float) -> None:
        self.position = time_seconds
        await self.wait_for_seek()

    async def wait_for_seek(self) -> None:
        await asyncio.sleep(self.settle_seconds)


def frame_count(duration_seconds: float, frame_rate: float) -> int:
    """Number of output frames: floor(duration x frame_rate)."""
    if duration_seconds <= 0 or frame_rate <= 0:
        return 0
    return math.floor(duration_seconds * frame_rate + _FRAME_COUNT_EPSILON)


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class FrameSampler:
    """
    Samples the overlay for one job.

    Args:
        timeline: Caption timeline
        surface: Overlay surface to repaint and capture
        playhead: Source-media playhead
        frame_rate: Output frames per second
        repaint_settle_seconds: Suspension between repaint and capture
        max_pending_writes: Encoded frames allowed in flight before sampling waits
    """

    def __init__(
        self,
        timeline: Timeline,
        surface: OverlaySurface,
        playhead: Playhead,
        frame_rate: float,
        repaint_settle_seconds: float = 0.0,
        max_pending_writes: int = 8,
    ):
        if frame_rate <= 0:
            raise ValueError(f"frame_rate must be positive, got {frame_rate}")
        self.timeline = timeline
        self.surface = surface
        self.playhead = playhead
        self.frame_rate = frame_rate
        self.repaint_settle_seconds = repaint_settle_seconds
        self.max_pending_writes = max(1, max_pending_writes)
        self.state = SamplerState.IDLE

    async def sample(
        self,
        duration_seconds: float,
        write_frame: FrameWriter,
        on_progress: Optional[Callable[[float], None]] = None,
        cancel_check: Optional[Callable[[], None]] = None,
    ) -> int:
        """
        Capture every frame of the job.

        Args:
            duration_seconds: Job duration in seconds
            write_frame: Receives (frame_index, png_bytes) in index order
            on_progress: Receives the completed fraction after each write
            cancel_check: Raises to abort sampling; called every iteration

        Returns:
            Number of frames written

        Raises:
            CaptureError: If any frame fails to render, capture or encode
        """
        if self.state != SamplerState.IDLE:
            raise RuntimeError(f"Sampler already used (state={self.state.value})")

        total = frame_count(duration_seconds, self.frame_rate)
        loop = asyncio.get_running_loop()
        pending: deque[tuple[int, asyncio.Future]] = deque()
        written = 0

        async def flush_one() -> None:
            nonlocal written
            index, future = pending.popleft()
            try:
                data = await future
            except Exception as e:
                raise CaptureError(index, f"PNG encoding failed: {e}") from e
            await write_frame(index, data)
            written += 1
            if on_progress:
                on_progress(written / total)

        self.state = SamplerState.SAMPLING
        logger.info(f"Sampling {total} frames at {self.frame_rate} fps ({duration_seconds:.2f}s)")

        try:
            for index in range(total):
                if cancel_check:
                    cancel_check()

                time_seconds = index / self.frame_rate
                await self.playhead.seek(time_seconds)

                try:
                    self.surface.update(self.timeline.active_at(time_seconds), time_seconds)
                except Exception as e:
                    raise CaptureError(index, f"overlay update failed: {e}") from e

                await asyncio.sleep(self.repaint_settle_seconds)

                try:
                    snapshot = self.surface.capture()
                except Exception as e:
                    raise CaptureError(index, str(e)) from e

                pending.append((index, loop.run_in_executor(None, encode_png, snapshot)))
                if len(pending) >= self.max_pending_writes:
                    await flush_one()

            while pending:
                await flush_one()

        except BaseException:
            self.state = SamplerState.ABORTED
            if pending:
                await asyncio.gather(*(future for _, future in pending), return_exceptions=True)
                pending.clear()
            raise

        self.state = SamplerState.DONE
        logger.info(f"Captured {written} frames")
        return written
