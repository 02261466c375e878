"""
Escaping for FFmpeg filter expressions.

FFmpeg parses a filter graph in two levels. The option level splits
``key=value`` pairs on ``:`` and treats ``'`` and ``\\`` as quoting
characters; ``%`` starts a drawtext expansion. The graph level splits
filters on ``,`` and ``;`` and reads ``[`` / ``]`` as link labels.

escape_text / escape_path produce option-level values. escape_filter_argument
protects a complete option string for the graph level.
"""

import os
from typing import Optional

# Backslash must stay first: escaping it later would double the
# backslashes introduced for the other characters.
_OPTION_META_CHARACTERS = ("\\", "'", ":", "%")
_GRAPH_META_CHARACTERS = ("\\", "'", ",", ";", "[", "]")


def _escape(raw: str, characters: tuple[str, ...]) -> str:
    escaped = raw
    for char in characters:
        escaped = escaped.replace(char, "\\" + char)
    return escaped


def escape_text(raw: str) -> str:
    """
    Escape caption text for use as a filter option value.

    Args:
        raw: Caption text exactly as it should appear on screen

    Returns:
        Text with backslash, single quote, colon and percent escaped
    """
    return _escape(raw, _OPTION_META_CHARACTERS)


def escape_path(raw: str, separator: Optional[str] = None) -> str:
    """
    Escape a filesystem path for use as a filter option value.

    Host path separators are normalized to forward slashes before escaping,
    so a Windows drive letter (``C:``) comes out as ``C\\:``.

    Args:
        raw: Path on the host filesystem
        separator: Host path separator (defaults to os.sep)

    Returns:
        Escaped path string
    """
    separator = separator or os.sep
    normalized = raw
    for sep in (separator, os.altsep if separator == os.sep else None):
        if sep and sep != "/":
            normalized = normalized.replace(sep, "/")
    return _escape(normalized, _OPTION_META_CHARACTERS)


def escape_filter_argument(argument: str) -> str:
    """Escape a complete ``key=value:...`` string for the filter graph parser."""
    return _escape(argument, _GRAPH_META_CHARACTERS)


def unescape(escaped: str) -> str:
    """
    Reverse one level of backslash escaping.

    A backslash followed by any character yields that character; a trailing
    lone backslash is kept as is.
    """
    result = []
    chars = iter(escaped)
    for char in chars:
        if char == "\\":
            result.append(next(chars, "\\"))
        else:
            result.append(char)
    return "".join(result)
