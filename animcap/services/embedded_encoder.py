"""
Embedded Encoder - renders captions in-process with PyAV.

The encoder module is imported once per process session and reused by every
job. Each job works against its own VirtualFileSystem: captured overlay
frames, the fetched source and intermediate artifacts live there as named
byte blobs, and every entry is registered with the job's resources.

Encoding is two commands issued to the module:
1. Composite the frame sequence over the source video (or a black canvas
   for audio-only sources) into a silent intermediate clip.
2. If the source has audio, mux it with the intermediate clip. A failure
   here falls back to the silent clip instead of failing the job.
"""

import asyncio
import functools
import importlib
import io
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

from PIL import Image

from animcap.config import Settings, get_overlay_style, get_settings
from animcap.services.errors import (
    AudioMuxError,
    ConfigurationError,
    EncoderRuntimeError,
    MediaFetchError,
    RenderCancelledError,
    RenderValidationError,
)
from animcap.services.frame_sampler import FrameSampler, Playhead
from animcap.services.media_source import MP4_AUDIO_CODECS, MediaFetcher, MediaInfo
from animcap.services.overlay_renderer import OverlayRenderer, PillowOverlaySurface
from animcap.services.progress import StatusMessage
from animcap.services.render_job import (
    EncoderBackend,
    JobContext,
    JobStatus,
    RenderBackend,
    RenderJob,
    RenderResult,
)
from animcap.services.resource_manager import JobResources
from animcap.services.timeline import resolve_render_duration

logger = logging.getLogger(__name__)

FRAME_PATTERN = "frame-%05d.png"
INTERMEDIATE_NAME = "intermediate.mp4"
OUTPUT_NAME = "output.mp4"

# Preferred H.264 encoders, with the built-in MPEG-4 encoder as last resort
VIDEO_CODEC_CANDIDATES = ("libx264", "libopenh264", "mpeg4")

# Share of the encode stage taken by the frame encode command; muxing gets the rest
FRAME_ENCODE_SHARE = 0.85


class VirtualFileSystem:
    """Private in-memory file namespace for one job."""

    def __init__(self):
        self._files: dict[str, bytes] = {}

    def write_file(self, name: str, data: bytes) -> None:
        self._files[name] = data

    def read_file(self, name: str) -> bytes:
        try:
            return self._files[name]
        except KeyError:
            raise FileNotFoundError(name) from None

    def delete_file(self, name: str) -> None:
        self._files.pop(name, None)

    def rename(self, source: str, target: str) -> None:
        self._files[target] = self.read_file(source)
        del self._files[source]

    def path_exists(self, name: str) -> bool:
        return name in self._files

    def list_files(self) -> list[str]:
        return sorted(self._files)

    @property
    def total_bytes(self) -> int:
        return sum(len(data) for data in self._files.values())


class EmbeddedEncoderModule:
    """
    Session-wide handle on the in-process encoder module.

    load() imports the module and picks a video encoder on first use; later
    calls return the cached module. The encode, mux and probe commands are
    blocking and meant to run in an executor.

    Args:
        module_name: Importable name of the encoder module
    """

    def __init__(self, module_name: str = "av"):
        self.module_name = module_name
        self.video_codec: Optional[str] = None
        self._module: Any = None
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._module is not None

    async def load(self) -> Any:
        """
        Load the module once per session.

        Raises:
            ConfigurationError: If the module is missing or has no usable video encoder
        """
        if self._module is not None:
            return self._module
        async with self._lock:
            if self._module is None:
                loop = asyncio.get_running_loop()
                try:
                    module = await loop.run_in_executor(None, importlib.import_module, self.module_name)
                except ImportError as e:
                    raise ConfigurationError(
                        f"Embedded encoder module '{self.module_name}' is not installed"
                    ) from e
                self.video_codec = self._select_video_codec(module)
                self._module = module
                logger.info(f"Embedded encoder loaded: {self.module_name} (video codec {self.video_codec})")
        return self._module

    def _select_video_codec(self, module: Any) -> str:
        available = module.codecs_available
        for name in VIDEO_CODEC_CANDIDATES:
            if name in available:
                return name
        raise ConfigurationError(f"Embedded encoder has none of {', '.join(VIDEO_CODEC_CANDIDATES)}")

    def _require(self) -> Any:
        if self._module is None:
            raise ConfigurationError("Embedded encoder module is not loaded")
        return self._module

    def probe(self, data: bytes) -> MediaInfo:
        """Read the stream layout of in-memory media."""
        av = self._require()
        try:
            with av.open(io.BytesIO(data)) as container:
                video = container.streams.video[0] if container.streams.video else None
                audio = container.streams.audio[0] if container.streams.audio else None
                duration = container.duration / av.time_base if container.duration else None
                return MediaInfo(
                    duration=duration,
                    has_video=video is not None,
                    has_audio=audio is not None,
                    width=video.codec_context.width if video else None,
                    height=video.codec_context.height if video else None,
                    audio_codec=audio.codec_context.name if audio else None,
                )
        except (av.error.FFmpegError, ValueError) as e:
            raise MediaFetchError(f"Source media could not be decoded: {e}") from e

    def encode_frames(
        self,
        vfs: VirtualFileSystem,
        frame_count: int,
        frame_rate: int,
        size: tuple[int, int],
        output_name: str,
        underlay_name: Optional[str] = None,
        background_color: tuple[int, int, int] = (0, 0, 0),
        on_progress: Optional[Callable[[float], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> None:
        """
        Encode the captured frame sequence into a silent clip.

        Frame i is shown at i / frame_rate, composited over the source video
        frame current at that time when an underlay is given. should_stop is
        polled before every frame and may be called from a worker thread.

        Raises:
            RenderCancelledError: If should_stop returns True
            EncoderRuntimeError: If the module fails to encode
        """
        av = self._require()
        buffer = io.BytesIO()
        underlay = av.open(io.BytesIO(vfs.read_file(underlay_name))) if underlay_name else None
        try:
            underlay_frames = None
            if underlay is not None and underlay.streams.video:
                underlay_frames = _sample_underlay(underlay, frame_rate, size)

            with av.open(buffer, mode="w", format="mp4") as output:
                stream = output.add_stream(self.video_codec, rate=frame_rate)
                stream.width, stream.height = size
                stream.pix_fmt = "yuv420p"

                for index in range(frame_count):
                    _stop_if_requested(should_stop, index)
                    overlay = Image.open(io.BytesIO(vfs.read_file(FRAME_PATTERN % index))).convert("RGBA")
                    base = next(underlay_frames) if underlay_frames else None
                    if base is None:
                        base = Image.new("RGBA", size, background_color + (255,))
                    composed = Image.alpha_composite(base, overlay).convert("RGB")

                    frame = av.VideoFrame.from_image(composed)
                    frame.pts = index
                    for packet in stream.encode(frame):
                        output.mux(packet)
                    if on_progress:
                        on_progress((index + 1) / frame_count)

                for packet in stream.encode():
                    output.mux(packet)
        except av.error.FFmpegError as e:
            raise EncoderRuntimeError(e.errno or 1, str(e)) from e
        finally:
            if underlay is not None:
                underlay.close()

        vfs.write_file(output_name, buffer.getvalue())

    def mux_audio(
        self,
        vfs: VirtualFileSystem,
        video_name: str,
        audio_source_name: str,
        output_name: str,
        duration: float,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> None:
        """
        Mux the source audio with an encoded clip.

        MP4-compatible audio is passed through; anything else is re-encoded
        to AAC. Audio past the clip duration is dropped.

        Raises:
            AudioMuxError: On any failure, including a missing audio track
            RenderCancelledError: If should_stop returns True
        """
        av = self._require()
        buffer = io.BytesIO()
        try:
            with av.open(io.BytesIO(vfs.read_file(video_name))) as video_in, \
                    av.open(io.BytesIO(vfs.read_file(audio_source_name))) as audio_in:
                if not audio_in.streams.audio:
                    raise AudioMuxError("Source media has no audio track")
                video_stream = video_in.streams.video[0]
                audio_stream = audio_in.streams.audio[0]
                passthrough = audio_stream.codec_context.name in MP4_AUDIO_CODECS

                with av.open(buffer, mode="w", format="mp4") as output:
                    video_out = output.add_stream_from_template(video_stream)
                    if passthrough:
                        audio_out = output.add_stream_from_template(audio_stream)
                    else:
                        audio_out = output.add_stream("aac", rate=audio_stream.codec_context.sample_rate)

                    for packet in video_in.demux(video_stream):
                        _stop_if_requested(should_stop)
                        if packet.dts is None:
                            continue
                        packet.stream = video_out
                        output.mux(packet)

                    if passthrough:
                        for packet in audio_in.demux(audio_stream):
                            _stop_if_requested(should_stop)
                            if packet.dts is None:
                                continue
                            if packet.pts is not None and packet.pts * packet.time_base >= duration:
                                break
                            packet.stream = audio_out
                            output.mux(packet)
                    else:
                        for frame in audio_in.decode(audio_stream):
                            _stop_if_requested(should_stop)
                            if frame.time is not None:
                                if frame.time >= duration:
                                    break
                                frame = _trim_audio_frame(av, frame, duration)
                            frame.pts = None
                            for packet in audio_out.encode(frame):
                                output.mux(packet)
                        for packet in audio_out.encode():
                            output.mux(packet)
        except (AudioMuxError, RenderCancelledError):
            raise
        except Exception as e:
            raise AudioMuxError(f"Audio mux failed: {e}") from e

        vfs.write_file(output_name, buffer.getvalue())


def _stop_if_requested(should_stop: Optional[Callable[[], bool]], frame_index: Optional[int] = None) -> None:
    if should_stop is not None and should_stop():
        where = f" at frame {frame_index}" if frame_index is not None else ""
        raise RenderCancelledError(f"encode stopped{where}")


def _trim_audio_frame(av: Any, frame: Any, duration: float) -> Any:
    """Cut a decoded frame that runs past duration."""
    keep = max(1, int(round((duration - frame.time) * frame.sample_rate)))
    if keep >= frame.samples:
        return frame
    trimmed = av.AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=keep)
    channels = 1 if frame.format.is_planar else frame.layout.nb_channels
    plane_bytes = keep * frame.format.bytes * channels
    for source, target in zip(frame.planes, trimmed.planes):
        target.update(bytes(source)[:plane_bytes])
    trimmed.sample_rate = frame.sample_rate
    return trimmed


def _sample_underlay(container: Any, frame_rate: int, size: tuple[int, int]) -> Iterator[Optional[Image.Image]]:
    """Yield the source frame current at each output tick, resized to size."""
    decoded = container.decode(video=0)
    current = None
    upcoming = next(decoded, None)
    index = 0
    while True:
        tick = index / frame_rate
        while upcoming is not None and (upcoming.time or 0.0) <= tick + 1e-6:
            current = upcoming
            upcoming = next(decoded, None)
        if current is None:
            yield None
        else:
            image = current.to_image().convert("RGBA")
            if image.size != size:
                image = image.resize(size)
            yield image
        index += 1


@dataclass
class EncodeOutcome:
    """What the embedded encode produced."""

    has_audio: bool
    audio_fallback: bool = False


class EmbeddedEncoder:
    """Issues the encode and mux commands for one job."""

    def __init__(self, module: EmbeddedEncoderModule):
        self.module = module

    async def encode(
        self,
        vfs: VirtualFileSystem,
        frame_count: int,
        source_name: str,
        output_name: str,
        media: MediaInfo,
        duration: float,
        size: tuple[int, int],
        frame_rate: int,
        resources: JobResources,
        on_progress: Optional[Callable[[float], None]] = None,
        on_mux: Optional[Callable[[], None]] = None,
        cancel_check: Optional[Callable[[], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> EncodeOutcome:
        """
        Encode captured frames and mux source audio.

        Args:
            vfs: Job's virtual filesystem holding frames and the source
            frame_count: Number of captured frames
            source_name: VFS name of the source media
            output_name: VFS name for the final artifact
            media: Probed source layout
            duration: Job duration in seconds
            size: Output (width, height)
            frame_rate: Output frame rate
            resources: Resource scope for new VFS entries
            on_progress: Receives encode-stage fraction in [0, 1]
            on_mux: Called when the mux command starts
            cancel_check: Raises to abort between commands
            should_stop: Thread-safe flag polled inside the commands

        Returns:
            EncodeOutcome describing the audio result
        """
        loop = asyncio.get_running_loop()

        def report(offset: float, span: float) -> Optional[Callable[[float], None]]:
            if on_progress is None:
                return None
            return lambda fraction: loop.call_soon_threadsafe(on_progress, offset + span * fraction)

        await loop.run_in_executor(None, functools.partial(
            self.module.encode_frames,
            vfs,
            frame_count,
            frame_rate,
            size,
            INTERMEDIATE_NAME,
            underlay_name=source_name if media.has_video else None,
            on_progress=report(0.0, FRAME_ENCODE_SHARE),
            should_stop=should_stop,
        ))
        resources.register_vfs_entry(vfs, INTERMEDIATE_NAME)
        logger.info(f"Encoded {frame_count} frames into {INTERMEDIATE_NAME}")

        if cancel_check:
            cancel_check()

        if media.has_audio:
            if on_mux:
                on_mux()
            try:
                await loop.run_in_executor(None, functools.partial(
                    self.module.mux_audio, vfs, INTERMEDIATE_NAME, source_name, output_name, duration,
                    should_stop=should_stop,
                ))
                resources.register_vfs_entry(vfs, output_name)
                return EncodeOutcome(has_audio=True)
            except AudioMuxError as e:
                logger.warning(f"{e} - falling back to silent video")

        vfs.rename(INTERMEDIATE_NAME, output_name)
        resources.register_vfs_entry(vfs, output_name)
        return EncodeOutcome(has_audio=False, audio_fallback=media.has_audio)


class EmbeddedBackend(EncoderBackend):
    """Samples overlay frames and encodes them with the embedded module."""

    kind = RenderBackend.EMBEDDED

    def __init__(
        self,
        module: EmbeddedEncoderModule,
        settings: Optional[Settings] = None,
        fetcher: Optional[MediaFetcher] = None,
    ):
        self.settings = settings or get_settings()
        self.module = module
        self.fetcher = fetcher or MediaFetcher()
        self.encoder = EmbeddedEncoder(module)

    @property
    def capture_weight(self) -> float:
        return self.settings.embedded_capture_weight

    async def render(self, job: RenderJob, context: JobContext) -> RenderResult:
        reporter = context.reporter
        resources = context.resources
        loop = asyncio.get_running_loop()

        context.set_status(JobStatus.PREPARING)
        reporter.status(StatusMessage.LOADING_ENCODER)
        await self.module.load()
        job.raise_if_cancelled()

        reporter.status(StatusMessage.PREPARING)
        data = await self.fetcher.fetch_bytes(job.source_location)
        media = await loop.run_in_executor(None, self.module.probe, data)
        if not media.has_video and not media.has_audio:
            raise MediaFetchError("Source media has neither video nor audio")

        vfs = VirtualFileSystem()
        source_name = "input.mp4" if media.has_video else "input.mp3"
        vfs.write_file(source_name, data)
        resources.register_vfs_entry(vfs, source_name)
        del data

        duration = resolve_render_duration(
            job.timeline,
            requested_seconds=job.duration_seconds,
            media_duration=media.duration,
            has_video=media.has_video,
            has_audio=media.has_audio,
        )
        size = self._output_size(job, media)
        logger.info(f"Job {job.job_id}: rendering {duration:.2f}s at {size[0]}x{size[1]}")
        job.raise_if_cancelled()

        context.set_status(JobStatus.SAMPLING)
        reporter.capture(0.0, StatusMessage.CAPTURING)
        renderer = OverlayRenderer(context.font_catalog, size, get_overlay_style(job.aspect_ratio))
        sampler = FrameSampler(
            job.timeline,
            PillowOverlaySurface(renderer),
            Playhead(self.settings.seek_settle_seconds),
            frame_rate=self.settings.frame_rate,
            repaint_settle_seconds=self.settings.repaint_settle_seconds,
            max_pending_writes=self.settings.max_pending_frame_writes,
        )

        async def write_frame(index: int, png: bytes) -> None:
            name = FRAME_PATTERN % index
            vfs.write_file(name, png)
            resources.register_vfs_entry(vfs, name)

        frames = await sampler.sample(
            duration,
            write_frame,
            on_progress=reporter.capture,
            cancel_check=job.raise_if_cancelled,
        )
        if frames == 0:
            raise RenderValidationError(
                f"Duration {duration:.3f}s is shorter than one frame", field="durationSeconds"
            )
        job.raise_if_cancelled()

        context.set_status(JobStatus.ENCODING)
        reporter.encode(0.0, StatusMessage.ENCODING)

        def on_mux() -> None:
            context.set_status(JobStatus.MUXING)
            reporter.encode(FRAME_ENCODE_SHARE, StatusMessage.ADDING_AUDIO)

        outcome = await self.encoder.encode(
            vfs,
            frames,
            source_name,
            OUTPUT_NAME,
            media,
            duration,
            size,
            self.settings.frame_rate,
            resources,
            on_progress=reporter.encode,
            on_mux=on_mux,
            cancel_check=job.raise_if_cancelled,
            should_stop=lambda: job.is_cancelled,
        )

        context.set_status(JobStatus.FINALIZING)
        reporter.encode(1.0, StatusMessage.FINALIZING)
        output = vfs.read_file(OUTPUT_NAME)
        output_path = os.path.join(self.settings.output_directory, f"{job.job_id}.{job.output_format}")
        await loop.run_in_executor(None, _write_bytes, output_path, output)
        logger.info(f"Job {job.job_id}: wrote {len(output) / 1024 / 1024:.1f} MB to {output_path}")

        return RenderResult(
            job_id=job.job_id,
            backend=self.kind,
            duration_seconds=duration,
            output_path=output_path,
            bytes_written=len(output),
            has_audio=outcome.has_audio,
            audio_fallback=outcome.audio_fallback,
            frame_count=frames,
        )

    def _output_size(self, job: RenderJob, media: MediaInfo) -> tuple[int, int]:
        if media.has_video and media.width and media.height:
            # yuv420p needs even dimensions
            return (media.width - media.width % 2, media.height - media.height % 2)
        return self.settings.get_output_size(job.aspect_ratio)


def _write_bytes(path: str, data: bytes) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
