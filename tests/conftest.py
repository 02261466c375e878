"""
Pytest configuration and fixtures.
"""

import os
import sys

import pytest

# Add repo root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from animcap.config import Settings
from animcap.services.font_catalog import initialize_font_catalog
from animcap.services.progress import ProgressReporter
from animcap.services.render_job import JobContext, JobStatus
from animcap.services.resource_manager import JobResources
from animcap.services.timeline import AnimationKind, Segment, build_timeline


@pytest.fixture
def fonts_dir(tmp_path):
    """Fonts directory with placeholder font files (the renderer falls back to Pillow's built-in font)."""
    directory = tmp_path / "fonts"
    directory.mkdir()
    for name in ("roboto-bold.ttf", "anton.ttf", "bangers.otf"):
        (directory / name).write_bytes(b"not a real font")
    (directory / "README.txt").write_text("ignored")
    return directory


@pytest.fixture
def font_catalog(fonts_dir):
    """Font catalog over the placeholder fonts."""
    return initialize_font_catalog(str(fonts_dir), "roboto-bold")


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing output at a temp directory."""

    class TestSettings(Settings):
        @property
        def output_directory(self) -> str:
            return str(tmp_path / "output")

        @property
        def frame_rate(self) -> int:
            return 10

    return TestSettings(_env_file=None, ffmpeg_path=None, ffprobe_path=None, animcap_api_key=None)


@pytest.fixture
def hello_timeline():
    """Single fading caption over the first two seconds."""
    return build_timeline([
        Segment("hello", 0.0, 2.0, frozenset({AnimationKind.FADE_IN})),
    ])


@pytest.fixture
def make_context(font_catalog, test_settings):
    """Factory for a JobContext with a recording reporter."""

    def factory(job_id="job-1", sink=None, capture_weight=50.0):
        statuses: list[JobStatus] = []
        updates = []
        context = JobContext(
            settings=test_settings,
            font_catalog=font_catalog,
            resources=JobResources(job_id),
            reporter=ProgressReporter(job_id, capture_weight, updates.append),
            set_status=statuses.append,
            sink=sink,
        )
        context.statuses = statuses
        context.updates = updates
        return context

    return factory


@pytest.fixture
def mock_fetcher(mocker):
    """Media fetcher returning fixed bytes."""
    fetcher = mocker.MagicMock()
    fetcher.fetch_bytes = mocker.AsyncMock(return_value=b"source-media")
    return fetcher
