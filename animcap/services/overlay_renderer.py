"""
Overlay Renderer - draws the animated caption layer with Pillow.

The overlay is rendered independently of the source media onto a
transparent RGBA canvas. Active segments are stacked vertically around the
frame center, each drawn as its own sprite so that per-segment animations
(scale, blur, opacity, glow, karaoke fill) never bleed into each other.
"""

import logging
from typing import Optional, Sequence

from PIL import Image, ImageDraw, ImageFilter, ImageFont

from animcap.config import OverlayStyle
from animcap.services.animations import (
    BOUNCE_HEIGHT_EM,
    RAIN_DROP_EM,
    SHAKE_AMPLITUDE_EM,
    has_letter_animation,
    letter_pose,
    segment_pose,
)
from animcap.services.font_catalog import FontCatalog
from animcap.services.timeline import AnimationKind, Segment

logger = logging.getLogger(__name__)

# Font sizes in OverlayStyle are given for a 720px short edge
REFERENCE_SHORT_EDGE = 720


class OverlayRenderer:
    """
    Renders the caption overlay for a given instant.

    One renderer is created per job; its font cache is not shared.

    Args:
        font_catalog: Catalog used to resolve segment fonts
        size: Output (width, height) in pixels
        style: Overlay styling
    """

    def __init__(self, font_catalog: FontCatalog, size: tuple[int, int], style: Optional[OverlayStyle] = None):
        self.font_catalog = font_catalog
        self.width, self.height = size
        self.style = style or OverlayStyle()
        self.font_size = max(8, round(self.style.font_size * min(size) / REFERENCE_SHORT_EDGE))
        self._font_cache: dict[tuple[str, int], ImageFont.ImageFont] = {}
        self._measure = ImageDraw.Draw(Image.new("RGBA", (1, 1)))

    def render(self, segments: Sequence[Segment], time_seconds: float) -> Image.Image:
        """
        Render every given segment at the given time.

        Args:
            segments: Active segments, in stacking order (top to bottom)
            time_seconds: Timeline position in seconds

        Returns:
            RGBA image of the full output size
        """
        canvas = Image.new("RGBA", (self.width, self.height), (0, 0, 0, 0))
        if not segments:
            return canvas

        sprites = [self._render_segment(segment, time_seconds) for segment in segments]
        gap = self.style.segment_gap
        total_height = sum(sprite.height for sprite, _ in sprites) + gap * (len(sprites) - 1)
        y = (self.height - total_height) // 2

        for sprite, offset_x in sprites:
            x = (self.width - sprite.width) // 2 + offset_x
            layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
            layer.paste(sprite, (x, y))
            canvas = Image.alpha_composite(canvas, layer)
            y += sprite.height + gap

        return canvas

    # ============================================================
    # Segment sprites
    # ============================================================

    def _render_segment(self, segment: Segment, time_seconds: float) -> tuple[Image.Image, int]:
        elapsed = time_seconds - segment.start_time
        pose = segment_pose(segment.animations, elapsed, segment.duration)
        font = self._font(segment.font_family)
        lines = self._wrap(segment.text, font)

        if has_letter_animation(segment.animations):
            sprite = self._render_letters(lines, font, segment, elapsed)
        else:
            sprite = self._render_lines(lines, font, self.style.primary_color)
            if pose.fill_fraction is not None:
                sprite = self._apply_karaoke(sprite, lines, font, pose.fill_fraction)

        if pose.glow > 0:
            sprite = self._apply_glow(sprite, pose.glow)
        if pose.scale != 1.0:
            scaled = (max(1, round(sprite.width * pose.scale)), max(1, round(sprite.height * pose.scale)))
            sprite = sprite.resize(scaled, Image.Resampling.LANCZOS)
        blur_px = pose.blur_em * self.font_size
        if blur_px >= 0.5:
            sprite = sprite.filter(ImageFilter.GaussianBlur(blur_px))
        if pose.opacity < 1.0:
            sprite = _scale_alpha(sprite, pose.opacity)

        return sprite, round(pose.offset_x_em * self.font_size)

    def _padding(self) -> int:
        return self.style.glow_radius + self.style.shadow_offset + round(SHAKE_AMPLITUDE_EM * self.font_size)

    def _line_height(self, font: ImageFont.ImageFont) -> int:
        # Text is drawn from the ascender line, so the bottom edge is the full height
        _, _, _, bottom = self._measure.textbbox((0, 0), "Hg", font=font, anchor="la")
        return bottom

    def _sprite_canvas(self, lines: list[str], font: ImageFont.ImageFont, extra_top: int = 0) -> tuple[Image.Image, list[int], int]:
        pad = self._padding()
        line_height = self._line_height(font)
        widths = [round(self._measure.textlength(line, font=font)) for line in lines]
        width = max(widths) + pad * 2
        height = line_height * len(lines) + self.style.line_spacing * (len(lines) - 1) + pad * 2 + extra_top
        return Image.new("RGBA", (max(1, width), max(1, height)), (0, 0, 0, 0)), widths, line_height

    def _render_lines(self, lines: list[str], font: ImageFont.ImageFont, color: tuple[int, int, int, int]) -> Image.Image:
        sprite, widths, line_height = self._sprite_canvas(lines, font)
        draw = ImageDraw.Draw(sprite)
        pad = self._padding()
        shadow = self.style.shadow_offset
        y = pad
        for line, line_width in zip(lines, widths):
            x = (sprite.width - line_width) // 2
            draw.text((x + shadow, y + shadow), line, font=font, fill=self.style.shadow_color, anchor="la")
            draw.text((x, y), line, font=font, fill=color, anchor="la")
            y += line_height + self.style.line_spacing
        return sprite

    def _render_letters(self, lines: list[str], font: ImageFont.ImageFont, segment: Segment, elapsed: float) -> Image.Image:
        lift_em = RAIN_DROP_EM if AnimationKind.RAIN_TEXT in segment.animations else BOUNCE_HEIGHT_EM
        extra_top = round(lift_em * self.font_size)
        sprite, widths, line_height = self._sprite_canvas(lines, font, extra_top=extra_top)
        draw = ImageDraw.Draw(sprite)
        pad = self._padding()
        shadow = self.style.shadow_offset
        index = 0
        y = pad + extra_top
        for line, line_width in zip(lines, widths):
            x = float((sprite.width - line_width) // 2)
            for char in line:
                pose = letter_pose(segment.animations, index, elapsed)
                index += 1
                advance = self._measure.textlength(char, font=font)
                if pose.opacity > 0 and not char.isspace():
                    char_y = y + round(pose.offset_y_em * self.font_size)
                    alpha = pose.opacity
                    draw.text((x + shadow, char_y + shadow), char, font=font,
                              fill=_with_alpha(self.style.shadow_color, alpha), anchor="la")
                    draw.text((x, char_y), char, font=font,
                              fill=_with_alpha(self.style.primary_color, alpha), anchor="la")
                x += advance
            y += line_height + self.style.line_spacing
        return sprite

    def _apply_karaoke(self, sprite: Image.Image, lines: list[str], font: ImageFont.ImageFont, fraction: float) -> Image.Image:
        """Reveal the highlight color left to right."""
        fill_width = round(sprite.width * fraction)
        if fill_width <= 0:
            return sprite
        highlight = self._render_lines(lines, font, self.style.highlight_color)
        sprite = sprite.copy()
        sprite.paste(highlight.crop((0, 0, fill_width, sprite.height)), (0, 0))
        return sprite

    def _apply_glow(self, sprite: Image.Image, intensity: float) -> Image.Image:
        alpha = sprite.getchannel("A").filter(ImageFilter.GaussianBlur(self.style.glow_radius))
        glow = Image.new("RGBA", sprite.size, self.style.glow_color)
        glow.putalpha(alpha.point(lambda v: min(255, int(v * intensity * 1.5))))
        return Image.alpha_composite(glow, sprite)

    # ============================================================
    # Fonts and layout
    # ============================================================

    def _font(self, family: Optional[str]) -> ImageFont.ImageFont:
        path = self.font_catalog.resolve(family)
        key = (path, self.font_size)
        font = self._font_cache.get(key)
        if font is not None:
            return font
        try:
            font = ImageFont.truetype(path, size=self.font_size)
        except OSError as e:
            logger.warning(f"Failed to load font {path}, using built-in font: {e}")
            font = ImageFont.load_default(size=self.font_size)
        self._font_cache[key] = font
        return font

    def _wrap(self, text: str, font: ImageFont.ImageFont) -> list[str]:
        """Greedy word wrap to the configured share of the output width."""
        max_width = self.width * self.style.max_text_width_ratio - self._padding() * 2
        lines: list[str] = []
        for paragraph in text.splitlines() or [text]:
            current = ""
            for word in paragraph.split():
                candidate = f"{current} {word}" if current else word
                if current and self._measure.textlength(candidate, font=font) > max_width:
                    lines.append(current)
                    current = word
                else:
                    current = candidate
            if current:
                lines.append(current)
        return lines or [text]


def _with_alpha(color: tuple[int, int, int, int], opacity: float) -> tuple[int, int, int, int]:
    r, g, b, a = color
    return (r, g, b, int(a * opacity))


def _scale_alpha(image: Image.Image, opacity: float) -> Image.Image:
    image = image.copy()
    image.putalpha(image.getchannel("A").point(lambda v: int(v * opacity)))
    return image


class PillowOverlaySurface:
    """
    Overlay surface backed by an OverlayRenderer.

    update() repaints the surface for a set of segments at a time position;
    capture() returns a snapshot that later updates cannot touch.
    """

    def __init__(self, renderer: OverlayRenderer):
        self.renderer = renderer
        self._image: Optional[Image.Image] = None

    @property
    def size(self) -> tuple[int, int]:
        return (self.renderer.width, self.renderer.height)

    def update(self, segments: Sequence[Segment], time_seconds: float) -> None:
        self._image = self.renderer.render(segments, time_seconds)

    def capture(self) -> Image.Image:
        if self._image is None:
            raise RuntimeError("Overlay surface has not been painted")
        return self._image.copy()
