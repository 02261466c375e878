"""
Animation curves for caption segments.

Each animation kind maps the time elapsed since a segment started to a pose:
opacity, offset, scale, blur, glow and karaoke fill. Offsets are expressed
in em (multiples of the font size) so they scale with the output size.
Letter-level kinds (bounceLetters, rainText) stagger each character by
LETTER_DELAY seconds.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Optional

from animcap.services.timeline import AnimationKind

LETTER_DELAY = 0.05

FADE_DURATION = 0.5
SLIDE_DURATION = 0.5
SLIDE_DISTANCE_EM = 2.0
FLASH_DURATION = 1.0
FLASH_PERIOD = 0.5
ZOOM_DURATION = 0.5
ZOOM_START_SCALE = 0.5
SHAKE_DURATION = 0.5
SHAKE_FREQUENCY = 10.0
SHAKE_AMPLITUDE_EM = 0.15
BLUR_DURATION = 0.6
BLUR_START_RADIUS_EM = 0.2
GLOW_PERIOD = 1.5
BOUNCE_DURATION = 0.6
BOUNCE_HEIGHT_EM = 0.5
RAIN_DURATION = 0.5
RAIN_DROP_EM = 1.5

LETTER_KINDS = frozenset({AnimationKind.BOUNCE_LETTERS, AnimationKind.RAIN_TEXT})


@dataclass(frozen=True)
class SegmentPose:
    """Whole-segment visual state at one instant."""

    opacity: float = 1.0
    offset_x_em: float = 0.0
    offset_y_em: float = 0.0
    scale: float = 1.0
    blur_em: float = 0.0
    glow: float = 0.0
    fill_fraction: Optional[float] = None


@dataclass(frozen=True)
class LetterPose:
    """Per-character offset and opacity for letter animations."""

    offset_y_em: float = 0.0
    opacity: float = 1.0


def ease_out(progress: float) -> float:
    """Cubic ease-out on [0, 1]."""
    p = max(0.0, min(1.0, progress))
    return 1.0 - (1.0 - p) ** 3


def _progress(elapsed: float, duration: float) -> float:
    if duration <= 0:
        return 1.0
    return max(0.0, min(1.0, elapsed / duration))


def segment_pose(
    animations: Iterable[AnimationKind],
    elapsed: float,
    segment_duration: float,
) -> SegmentPose:
    """
    Compute the pose of a segment.

    Args:
        animations: Animation kinds on the segment
        elapsed: Seconds since the segment's start time
        segment_duration: Length of the segment window in seconds

    Returns:
        SegmentPose combining every whole-segment animation
    """
    kinds = frozenset(animations)
    opacity = 1.0
    offset_x = 0.0
    scale = 1.0
    blur = 0.0
    glow = 0.0
    fill = None

    if AnimationKind.FADE_IN in kinds:
        opacity *= _progress(elapsed, FADE_DURATION)

    if AnimationKind.FLASH in kinds and elapsed < FLASH_DURATION:
        opacity *= abs(math.cos(2 * math.pi * elapsed / FLASH_PERIOD))

    if AnimationKind.SLIDE in kinds:
        offset_x -= (1.0 - ease_out(_progress(elapsed, SLIDE_DURATION))) * SLIDE_DISTANCE_EM

    if AnimationKind.SHAKE in kinds and elapsed < SHAKE_DURATION:
        damping = 1.0 - _progress(elapsed, SHAKE_DURATION)
        offset_x += SHAKE_AMPLITUDE_EM * damping * math.sin(2 * math.pi * SHAKE_FREQUENCY * elapsed)

    if AnimationKind.ZOOM_IN in kinds:
        scale = ZOOM_START_SCALE + (1.0 - ZOOM_START_SCALE) * ease_out(_progress(elapsed, ZOOM_DURATION))

    if AnimationKind.BLUR_IN in kinds:
        blur = BLUR_START_RADIUS_EM * (1.0 - _progress(elapsed, BLUR_DURATION))

    if AnimationKind.GLOW_TEXT in kinds:
        glow = 0.7 + 0.3 * math.sin(2 * math.pi * elapsed / GLOW_PERIOD)

    if AnimationKind.KARAOKE_FILL in kinds:
        fill = _progress(elapsed, segment_duration)

    return SegmentPose(
        opacity=max(0.0, min(1.0, opacity)),
        offset_x_em=offset_x,
        scale=scale,
        blur_em=blur,
        glow=glow,
        fill_fraction=fill,
    )


def letter_pose(animations: Iterable[AnimationKind], index: int, elapsed: float) -> LetterPose:
    """
    Compute the pose of one character for letter-level animations.

    Args:
        animations: Animation kinds on the segment
        index: Character index within the caption
        elapsed: Seconds since the segment's start time

    Returns:
        LetterPose for the character
    """
    kinds = frozenset(animations)
    local = elapsed - index * LETTER_DELAY

    if AnimationKind.RAIN_TEXT in kinds:
        if local < 0:
            return LetterPose(offset_y_em=-RAIN_DROP_EM, opacity=0.0)
        p = _progress(local, RAIN_DURATION)
        return LetterPose(offset_y_em=-RAIN_DROP_EM * (1.0 - ease_out(p)), opacity=p)

    if AnimationKind.BOUNCE_LETTERS in kinds:
        if local < 0 or local >= BOUNCE_DURATION:
            return LetterPose()
        q = local / BOUNCE_DURATION
        return LetterPose(offset_y_em=-BOUNCE_HEIGHT_EM * abs(math.sin(2 * math.pi * q)) * (1.0 - q))

    return LetterPose()


def has_letter_animation(animations: Iterable[AnimationKind]) -> bool:
    return bool(LETTER_KINDS.intersection(animations))
