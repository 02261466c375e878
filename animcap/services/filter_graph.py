"""
Filter graph builder for the native FFmpeg backend.

Compiles a caption timeline into a chain of drawtext filters, one per
segment, each gated by an enable window. Pure data transform: no files are
read and no processes are started.
"""

from typing import Optional

from animcap.config import DrawTextStyle
from animcap.services.escaping import escape_filter_argument, escape_path, escape_text
from animcap.services.font_catalog import FontCatalog
from animcap.services.timeline import Segment, Timeline


def format_seconds(value: float) -> str:
    """Compact decimal form for filter expressions (2.0 -> "2", 1.25 -> "1.25")."""
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text or "0"


def build_drawtext(
    segment: Segment,
    font_path: str,
    style: Optional[DrawTextStyle] = None,
    path_separator: Optional[str] = None,
) -> str:
    """
    Build a single drawtext filter for one caption segment.

    Args:
        segment: Caption segment
        font_path: Resolved font file path
        style: Visual style constants
        path_separator: Host path separator (defaults to os.sep)

    Returns:
        Graph-escaped ``drawtext=...`` filter
    """
    style = style or DrawTextStyle()
    options = [
        f"fontfile={escape_path(font_path, path_separator)}",
        f"text={escape_text(segment.text)}",
        "expansion=none",
        f"fontcolor={style.font_color}",
        f"fontsize={style.font_size}",
    ]
    if style.box:
        options.extend([
            "box=1",
            f"boxcolor={style.box_color}",
            f"boxborderw={style.box_border_width}",
        ])
    options.extend([
        f"x={style.x}",
        f"y={style.y}",
        f"enable=between(t,{format_seconds(segment.start_time)},{format_seconds(segment.end_time)})",
    ])
    return "drawtext=" + escape_filter_argument(":".join(options))


def build_filter_graph(
    timeline: Timeline,
    font_catalog: FontCatalog,
    style: Optional[DrawTextStyle] = None,
    path_separator: Optional[str] = None,
) -> str:
    """
    Compile a timeline into a single filter chain.

    Filters appear in original segment order joined with ",".

    Args:
        timeline: Caption timeline
        font_catalog: Catalog used to resolve each segment's font
        style: Visual style constants
        path_separator: Host path separator (defaults to os.sep)

    Returns:
        Filter expression for ``-vf`` or ``-filter_complex``
    """
    return ",".join(
        build_drawtext(segment, font_catalog.resolve(segment.font_family), style, path_separator)
        for segment in timeline
    )
