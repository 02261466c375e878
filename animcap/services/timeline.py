"""
Timeline model for caption segments.

A Timeline is the validated, queryable collection of timed captions for one
render job. Segments may arrive out of order and may overlap; queries always
answer in original input order.
"""

import bisect
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from animcap.services.errors import EmptyTimelineError, RenderValidationError

logger = logging.getLogger(__name__)


class AnimationKind(str, Enum):
    """Animation directives a caption segment can carry."""

    FADE_IN = "fadeIn"
    RAIN_TEXT = "rainText"
    BOUNCE_LETTERS = "bounceLetters"
    FLASH = "flash"
    SLIDE = "slide"
    ZOOM_IN = "zoom-in"
    SHAKE = "shake"
    GLOW_TEXT = "glow-text"
    KARAOKE_FILL = "karaoke-fill"
    BLUR_IN = "blur-in"


@dataclass(frozen=True)
class Segment:
    """One timed caption with its animation directives."""

    text: str
    start_time: float
    end_time: float
    animations: frozenset[AnimationKind] = field(default_factory=frozenset)
    font_family: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.start_time, (int, float)) or not math.isfinite(self.start_time):
            raise RenderValidationError("startTime must be a finite number", field="startTime")
        if not isinstance(self.end_time, (int, float)) or not math.isfinite(self.end_time):
            raise RenderValidationError("endTime must be a finite number", field="endTime")
        if self.start_time < 0:
            raise RenderValidationError("startTime must be >= 0", field="startTime")
        if self.end_time <= self.start_time:
            raise RenderValidationError(
                f"endTime ({self.end_time}) must be greater than startTime ({self.start_time})",
                field="endTime",
            )
        if not isinstance(self.animations, frozenset):
            object.__setattr__(self, "animations", frozenset(self.animations))

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def is_active_at(self, time_seconds: float) -> bool:
        """Start is inclusive, end is exclusive."""
        return self.start_time <= time_seconds < self.end_time


class Timeline:
    """
    Ordered, immutable collection of caption segments.

    Lookup uses an index sorted by start time so that active_at only scans
    segments that have already started; results are returned in the order
    the segments were supplied.
    """

    def __init__(self, segments: Iterable[Segment]):
        self._segments: tuple[Segment, ...] = tuple(segments)
        order = sorted(range(len(self._segments)), key=lambda i: self._segments[i].start_time)
        self._by_start: tuple[int, ...] = tuple(order)
        self._starts: list[float] = [self._segments[i].start_time for i in order]

    def __len__(self) -> int:
        return len(self._segments)

    def __iter__(self):
        return iter(self._segments)

    @property
    def segments(self) -> tuple[Segment, ...]:
        return self._segments

    def active_at(self, time_seconds: float) -> list[Segment]:
        """
        Get every segment visible at the given time.

        Args:
            time_seconds: Query time in seconds

        Returns:
            Segments with start_time <= t < end_time, in input order
        """
        started = bisect.bisect_right(self._starts, time_seconds)
        indices = sorted(
            i for i in self._by_start[:started]
            if time_seconds < self._segments[i].end_time
        )
        return [self._segments[i] for i in indices]

    def total_duration(self) -> float:
        """Latest end time across all segments."""
        return max(segment.end_time for segment in self._segments)


def build_timeline(segments: Iterable[Segment]) -> Timeline:
    """
    Normalize segments and build a Timeline.

    Surrounding whitespace is stripped from each caption and segments left
    without text are dropped.

    Raises:
        EmptyTimelineError: If no segment remains after normalization
    """
    normalized = []
    for segment in segments:
        text = segment.text.strip()
        if not text:
            logger.debug(f"Dropping blank caption at {segment.start_time:.2f}s")
            continue
        if text != segment.text:
            segment = Segment(
                text=text,
                start_time=segment.start_time,
                end_time=segment.end_time,
                animations=segment.animations,
                font_family=segment.font_family,
            )
        normalized.append(segment)

    if not normalized:
        raise EmptyTimelineError(field="segments")

    return Timeline(normalized)


def resolve_render_duration(
    timeline: Timeline,
    requested_seconds: Optional[float] = None,
    media_duration: Optional[float] = None,
    has_video: bool = False,
    has_audio: bool = False,
) -> float:
    """
    Decide how long the rendered output runs.

    Compositing over a source video follows the source duration. When audio
    alone is the timing reference the output is clipped to the shorter of the
    media and the requested duration.

    Args:
        timeline: Caption timeline
        requested_seconds: Explicit duration from the request, if any
        media_duration: Probed source duration, if known
        has_video: Whether the source carries a video stream
        has_audio: Whether the source carries an audio stream

    Returns:
        Output duration in seconds
    """
    requested = requested_seconds or media_duration or timeline.total_duration()

    if has_video:
        return media_duration or requested
    if has_audio and media_duration:
        return min(media_duration, requested)
    return requested
