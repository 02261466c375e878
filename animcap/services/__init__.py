"""
Services for the caption renderer.

Includes:
- Caption model (timeline, animations, fonts, escaping)
- Native backend (FFmpeg drawtext filter graph over a streamed source)
- Embedded backend (overlay frame sampling, in-process PyAV encode)
- Job plumbing (resources, progress, orchestration)
"""

from animcap.services.embedded_encoder import EmbeddedBackend, EmbeddedEncoderModule, VirtualFileSystem
from animcap.services.errors import RenderError
from animcap.services.filter_graph import build_filter_graph
from animcap.services.font_catalog import FontCatalog, initialize_font_catalog
from animcap.services.frame_sampler import FrameSampler
from animcap.services.media_source import MediaFetcher, MediaProber
from animcap.services.native_encoder import NativeProcessBackend, NativeProcessEncoder, StreamingSink
from animcap.services.overlay_renderer import OverlayRenderer
from animcap.services.progress import ProgressReporter
from animcap.services.render_job import RenderBackend, RenderJob, RenderResult
from animcap.services.render_pipeline import RenderPipeline
from animcap.services.resource_manager import ResourceManager
from animcap.services.timeline import Segment, Timeline, build_timeline

__all__ = [
    # Caption model
    "Segment",
    "Timeline",
    "build_timeline",
    "FontCatalog",
    "initialize_font_catalog",
    "build_filter_graph",
    "OverlayRenderer",
    # Backends
    "NativeProcessBackend",
    "NativeProcessEncoder",
    "StreamingSink",
    "EmbeddedBackend",
    "EmbeddedEncoderModule",
    "VirtualFileSystem",
    "FrameSampler",
    "MediaFetcher",
    "MediaProber",
    # Jobs
    "RenderBackend",
    "RenderJob",
    "RenderResult",
    "RenderPipeline",
    "ResourceManager",
    "ProgressReporter",
    "RenderError",
]
