"""
Native Process Encoder - renders captions with an external FFmpeg binary.

The source media is streamed into FFmpeg's stdin and the fragmented MP4
output is streamed from its stdout while it is still being produced. Input,
output and diagnostics are pumped as three independent tasks; pumping them
one after another would deadlock once a pipe buffer fills up.
"""

import asyncio
import logging
import os
import re
from collections import deque
from typing import AsyncIterator, Callable, Optional

from animcap.config import Settings, get_settings
from animcap.services.errors import (
    ConfigurationError,
    EncoderLaunchError,
    EncoderRuntimeError,
    RenderCancelledError,
)
from animcap.services.filter_graph import build_filter_graph, format_seconds
from animcap.services.media_source import MP4_AUDIO_CODECS, MediaFetcher, MediaInfo, MediaProber
from animcap.services.progress import StatusMessage
from animcap.services.render_job import (
    EncoderBackend,
    JobContext,
    JobStatus,
    OutputSink,
    RenderBackend,
    RenderJob,
    RenderResult,
)
from animcap.services.resource_manager import JobResources
from animcap.services.timeline import resolve_render_duration

logger = logging.getLogger(__name__)

_TIME_PATTERN = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_LINE_SPLIT = re.compile(rb"[\r\n]")


class StreamingSink:
    """
    Bounded hand-off between the encoder's stdout and an HTTP response.

    The encoder side calls write() and finally close() or fail(); the
    response side iterates chunks(). write() blocks while the queue is full,
    which propagates backpressure to the encoder.
    """

    def __init__(self, max_chunks: int = 16):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_chunks)
        self._finished = asyncio.Event()
        self._error: Optional[BaseException] = None
        self.bytes_written = 0

    async def write(self, chunk: bytes) -> None:
        await self._queue.put(chunk)
        self.bytes_written += len(chunk)

    def close(self) -> None:
        self._finished.set()

    def fail(self, error: BaseException) -> None:
        self._error = error
        self._finished.set()

    async def get(self) -> Optional[bytes]:
        """
        Get the next chunk.

        Returns:
            The next chunk, or None once the stream finished cleanly

        Raises:
            The error passed to fail(), after all queued chunks were read
        """
        while self._queue.empty():
            if self._finished.is_set():
                if self._error is not None:
                    raise self._error
                return None
            getter = asyncio.ensure_future(self._queue.get())
            finished = asyncio.ensure_future(self._finished.wait())
            try:
                await asyncio.wait({getter, finished}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                finished.cancel()
                if not getter.done():
                    getter.cancel()
            if getter.done() and not getter.cancelled():
                return getter.result()
        return self._queue.get_nowait()

    async def chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.get()
            if chunk is None:
                return
            yield chunk


class DiagnosticsTail:
    """Keeps the last lines of encoder diagnostics for error reports."""

    def __init__(self, max_lines: int = 40):
        self._lines: deque[str] = deque(maxlen=max_lines)

    def append(self, line: str) -> None:
        self._lines.append(line)

    def text(self) -> str:
        return "\n".join(self._lines)


def parse_progress_time(line: str) -> Optional[float]:
    """Extract the ``time=HH:MM:SS.ss`` position from an FFmpeg stats line."""
    match = _TIME_PATTERN.search(line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class NativeProcessEncoder:
    """
    Spawns FFmpeg and pumps media through it.

    Args:
        ffmpeg_path: FFmpeg binary
        fontconfig_file: Optional FONTCONFIG_FILE for drawtext
        chunk_size: Read size for stdout
        diagnostics_tail_lines: Stderr lines kept for error reports
        preset: libx264 preset
        crf: libx264 constant rate factor
    """

    def __init__(
        self,
        ffmpeg_path: str,
        fontconfig_file: Optional[str] = None,
        chunk_size: int = 64 * 1024,
        diagnostics_tail_lines: int = 40,
        preset: str = "veryfast",
        crf: int = 20,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.fontconfig_file = fontconfig_file
        self.chunk_size = chunk_size
        self.diagnostics_tail_lines = diagnostics_tail_lines
        self.preset = preset
        self.crf = crf

    def build_command(
        self,
        filter_expression: str,
        media: Optional[MediaInfo] = None,
        duration: Optional[float] = None,
        background_size: tuple[int, int] = (1280, 720),
        frame_rate: int = 25,
    ) -> list[str]:
        """
        Build the FFmpeg argument list.

        Video sources get the filter chain applied directly with the audio
        copied unmodified. Audio-only sources are drawn over a generated
        black background and clipped to the shorter stream.
        """
        media = media or MediaInfo.unknown()
        cmd = [self.ffmpeg_path, "-hide_banner", "-i", "pipe:0"]

        if media.is_audio_only:
            width, height = background_size
            audio_codec = "copy" if media.audio_codec in MP4_AUDIO_CODECS else "aac"
            cmd.extend([
                "-f", "lavfi",
                "-i", f"color=c=black:s={width}x{height}:r={frame_rate}",
                "-filter_complex", f"[1:v]{filter_expression}[captioned]",
                "-map", "[captioned]",
                "-map", "0:a:0",
                "-c:a", audio_codec,
                "-shortest",
            ])
            if duration:
                cmd.extend(["-t", format_seconds(duration)])
        else:
            cmd.extend([
                "-vf", filter_expression,
                "-map", "0:v:0",
                "-map", "0:a?",
                "-c:a", "copy",
            ])

        cmd.extend([
            "-c:v", "libx264",
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-pix_fmt", "yuv420p",
            "-movflags", "frag_keyframe+empty_moov",
            "-f", "mp4",
            "pipe:1",
        ])
        return cmd

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.fontconfig_file:
            env["FONTCONFIG_FILE"] = self.fontconfig_file
        return env

    async def encode(
        self,
        source: AsyncIterator[bytes],
        filter_expression: str,
        sink: OutputSink,
        resources: JobResources,
        media: Optional[MediaInfo] = None,
        duration: Optional[float] = None,
        background_size: tuple[int, int] = (1280, 720),
        frame_rate: int = 25,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> int:
        """
        Run FFmpeg over a source stream.

        Args:
            source: Source media chunks
            filter_expression: Caption filter chain
            sink: Receives encoded output chunks
            resources: Resource scope the subprocess is registered with
            media: Probed source layout
            duration: Output duration, used for progress and audio-only clipping
            background_size: Canvas size for audio-only sources
            frame_rate: Canvas frame rate for audio-only sources
            cancel_event: Terminates the encoder when set
            on_progress: Receives encoded fraction in [0, 1]

        Returns:
            Number of output bytes written to the sink

        Raises:
            EncoderLaunchError: If FFmpeg cannot be started
            EncoderRuntimeError: If FFmpeg exits non-zero
            RenderCancelledError: If cancel_event is set before FFmpeg finishes
        """
        cmd = self.build_command(filter_expression, media, duration, background_size, frame_rate)
        logger.debug(f"Running: {' '.join(cmd[:8])}...")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
            )
        except OSError as e:
            raise EncoderLaunchError(f"Failed to start encoder {cmd[0]}: {e}") from e

        resources.register_process(process)
        logger.info(f"Encoder started (pid {process.pid})")

        diagnostics = DiagnosticsTail(self.diagnostics_tail_lines)
        written = 0

        async def pump_output() -> None:
            nonlocal written
            while True:
                chunk = await process.stdout.read(self.chunk_size)
                if not chunk:
                    break
                await sink.write(chunk)
                written += len(chunk)

        tasks = [
            asyncio.create_task(self._pump_input(source, process.stdin)),
            asyncio.create_task(pump_output()),
            asyncio.create_task(self._pump_diagnostics(process.stderr, diagnostics, duration, on_progress)),
        ]
        pumps = asyncio.gather(*tasks)

        try:
            if cancel_event is None:
                await pumps
            else:
                canceller = asyncio.ensure_future(cancel_event.wait())
                try:
                    await asyncio.wait({pumps, canceller}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    canceller.cancel()
                if not pumps.done():
                    raise RenderCancelledError("cancelled during encoding")
                pumps.result()
        except BaseException:
            pumps.cancel()
            for task in tasks:
                task.cancel()
            await _terminate(process)
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return_code = await process.wait()
        if return_code != 0:
            text = diagnostics.text()
            logger.error(f"Encoder exited with code {return_code}:\n{text}")
            raise EncoderRuntimeError(return_code, text)

        logger.info(f"Encoder finished: {written / 1024 / 1024:.1f} MB written")
        return written

    async def _pump_input(self, source: AsyncIterator[bytes], stdin: asyncio.StreamWriter) -> None:
        try:
            async for chunk in source:
                stdin.write(chunk)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Exit status decides whether this was a failure
            logger.debug("Encoder closed its input early")
        finally:
            if not stdin.is_closing():
                stdin.close()
            try:
                await stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Encoder input already closed")

    async def _pump_diagnostics(
        self,
        stderr: asyncio.StreamReader,
        tail: DiagnosticsTail,
        duration: Optional[float],
        on_progress: Optional[Callable[[float], None]],
    ) -> None:
        # Stats lines end in \r, so split manually rather than readline()
        pending = b""
        while True:
            chunk = await stderr.read(4096)
            if not chunk:
                break
            *lines, pending = _LINE_SPLIT.split(pending + chunk)
            for line in lines:
                self._handle_diagnostic(line, tail, duration, on_progress)
        if pending:
            self._handle_diagnostic(pending, tail, duration, on_progress)

    def _handle_diagnostic(
        self,
        raw: bytes,
        tail: DiagnosticsTail,
        duration: Optional[float],
        on_progress: Optional[Callable[[float], None]],
    ) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        position = parse_progress_time(line)
        if position is None:
            tail.append(line)
        elif duration and on_progress:
            on_progress(min(1.0, position / duration))


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            logger.debug(f"Encoder pid {process.pid} already exited")
        await process.wait()


class NativeProcessBackend(EncoderBackend):
    """Streams the source through FFmpeg with a drawtext filter chain."""

    kind = RenderBackend.NATIVE_PROCESS

    def __init__(
        self,
        settings: Optional[Settings] = None,
        fetcher: Optional[MediaFetcher] = None,
        prober: Optional[MediaProber] = None,
        encoder: Optional[NativeProcessEncoder] = None,
    ):
        self.settings = settings or get_settings()
        self.fetcher = fetcher or MediaFetcher()
        self._prober = prober
        self._encoder = encoder

    @property
    def capture_weight(self) -> float:
        return self.settings.native_capture_weight

    def check_configuration(self) -> None:
        if not self.settings.ffmpeg_path or not self.settings.ffprobe_path:
            raise ConfigurationError("FFMPEG_PATH and FFPROBE_PATH must be configured")

    @property
    def prober(self) -> MediaProber:
        if self._prober is None:
            self._prober = MediaProber(self.settings.ffprobe_path)
        return self._prober

    @property
    def encoder(self) -> NativeProcessEncoder:
        if self._encoder is None:
            self._encoder = NativeProcessEncoder(
                ffmpeg_path=self.settings.ffmpeg_path,
                fontconfig_file=self.settings.fontconfig_file,
                chunk_size=self.settings.stream_chunk_size,
                diagnostics_tail_lines=self.settings.diagnostics_tail_lines,
                preset=self.settings.ffmpeg_preset,
                crf=self.settings.ffmpeg_crf,
            )
        return self._encoder

    async def render(self, job: RenderJob, context: JobContext) -> RenderResult:
        if context.sink is None:
            raise ValueError("Native backend requires an output sink")
        reporter = context.reporter

        context.set_status(JobStatus.PREPARING)
        reporter.status(StatusMessage.PREPARING)
        media = await self.prober.probe(job.source_location)
        logger.info(
            f"Job {job.job_id}: source video={media.has_video} audio={media.has_audio} "
            f"duration={media.duration}"
        )
        job.raise_if_cancelled()
        source = await self.fetcher.open_stream(job.source_location, context.resources)
        reporter.capture(0.5)

        context.set_status(JobStatus.BUILDING_GRAPH)
        reporter.capture(0.5, StatusMessage.BUILDING_GRAPH)
        filter_expression = build_filter_graph(job.timeline, context.font_catalog)
        duration = resolve_render_duration(
            job.timeline,
            requested_seconds=job.duration_seconds,
            media_duration=media.duration,
            has_video=media.has_video,
            has_audio=media.has_audio,
        )
        reporter.capture(1.0)
        job.raise_if_cancelled()

        context.set_status(JobStatus.ENCODING)
        reporter.encode(0.0, StatusMessage.ENCODING)
        written = await self.encoder.encode(
            source,
            filter_expression,
            context.sink,
            context.resources,
            media=media,
            duration=duration,
            background_size=self.settings.get_output_size(job.aspect_ratio),
            frame_rate=self.settings.frame_rate,
            cancel_event=job.cancel_event,
            on_progress=reporter.encode,
        )

        context.set_status(JobStatus.FINALIZING)
        reporter.encode(1.0, StatusMessage.FINALIZING)
        return RenderResult(
            job_id=job.job_id,
            backend=self.kind,
            duration_seconds=duration,
            bytes_written=written,
            has_audio=media.has_audio,
        )
