"""
Font catalog - discovers caption fonts once at startup.

Any .ttf or .otf file in the configured fonts directory is a family, named
after its lower-cased filename stem (``Roboto-Bold.ttf`` -> ``roboto-bold``).
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

from animcap.services.errors import ConfigurationError

logger = logging.getLogger(__name__)

FONT_EXTENSIONS = (".ttf", ".otf")


@dataclass(frozen=True)
class FontCatalog:
    """Read-only mapping from family name to absolute font file path."""

    fonts: Mapping[str, str]
    default_family: str

    @property
    def families(self) -> list[str]:
        return sorted(self.fonts)

    @property
    def default_path(self) -> str:
        return self.fonts[self.default_family]

    def resolve(self, family: Optional[str] = None) -> str:
        """
        Resolve a requested family to a font file path.

        Unknown or missing families fall back to the catalog default.

        Args:
            family: Requested family name (case-insensitive)

        Returns:
            Absolute path of the font file
        """
        if family:
            path = self.fonts.get(family.strip().lower())
            if path:
                return path
            logger.debug(f"Font family '{family}' not found, using '{self.default_family}'")
        return self.default_path


def initialize_font_catalog(directory: str, default_family: str) -> FontCatalog:
    """
    Scan a directory for font files and build the catalog.

    Called once during application startup.

    Args:
        directory: Fonts directory
        default_family: Preferred fallback family name

    Returns:
        Immutable FontCatalog

    Raises:
        ConfigurationError: If the directory holds no font files
    """
    root = Path(directory)
    if not root.is_dir():
        raise ConfigurationError(f"Fonts directory not found: {directory}")

    fonts: dict[str, str] = {}
    for entry in sorted(root.iterdir()):
        if entry.is_file() and entry.suffix.lower() in FONT_EXTENSIONS:
            family = entry.stem.lower()
            if family in fonts:
                logger.warning(f"Duplicate font family '{family}', keeping {fonts[family]}")
                continue
            fonts[family] = str(entry.resolve())

    if not fonts:
        raise ConfigurationError(f"No font files found in {directory}")

    default_key = default_family.strip().lower()
    if default_key not in fonts:
        fallback = sorted(fonts)[0]
        logger.warning(
            f"Default font family '{default_family}' not found, falling back to '{fallback}'"
        )
        default_key = fallback

    logger.info(f"Font catalog loaded from {directory}: {', '.join(sorted(fonts))}")
    return FontCatalog(fonts=MappingProxyType(fonts), default_family=default_key)
