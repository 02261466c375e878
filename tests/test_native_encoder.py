"""
Tests for the native FFmpeg backend.

The encoder binary is replaced by small Python scripts so the streaming,
exit-code and cancellation paths run against a real subprocess.
"""

import asyncio
import sys

import pytest

from animcap.services.errors import (
    ConfigurationError,
    EncoderLaunchError,
    EncoderRuntimeError,
    RenderCancelledError,
)
from animcap.services.media_source import MediaInfo
from animcap.services.native_encoder import (
    NativeProcessBackend,
    NativeProcessEncoder,
    StreamingSink,
    parse_progress_time,
)
from animcap.services.render_job import JobStatus, RenderBackend, RenderJob
from animcap.services.resource_manager import JobResources
from animcap.services.timeline import Segment, build_timeline

ECHO_SCRIPT = """
import sys
sys.stderr.write("frame=1 time=00:00:01.00 bitrate=N/A speed=1x\\r")
sys.stderr.flush()
while True:
    chunk = sys.stdin.buffer.read(65536)
    if not chunk:
        break
    sys.stdout.buffer.write(chunk)
sys.stdout.flush()
sys.stderr.write("frame=2 time=00:00:02.00 bitrate=N/A speed=1x\\n")
"""

FAIL_SCRIPT = """
import sys
sys.stderr.write("Input #0, mov,mp4 from 'pipe:0'\\n")
sys.stderr.write("moov atom not found\\n")
sys.exit(1)
"""

HANG_SCRIPT = """
import time
time.sleep(60)
"""


class ScriptEncoder(NativeProcessEncoder):
    """NativeProcessEncoder running a Python script instead of FFmpeg."""

    def __init__(self, script, **kwargs):
        super().__init__(ffmpeg_path="ffmpeg", **kwargs)
        self.script = script
        self.commands: list[list[str]] = []

    def build_command(self, filter_expression, media=None, duration=None, background_size=(1280, 720), frame_rate=25):
        self.commands.append(super().build_command(filter_expression, media, duration, background_size, frame_rate))
        return [sys.executable, "-c", self.script]


class CollectingSink:
    """Output sink that keeps every chunk."""

    def __init__(self):
        self.chunks: list[bytes] = []

    async def write(self, chunk):
        self.chunks.append(chunk)

    @property
    def data(self):
        return b"".join(self.chunks)


async def iter_payload(payload, chunk_size=100_000):
    for offset in range(0, len(payload), chunk_size):
        yield payload[offset:offset + chunk_size]


class TestBuildCommand:
    """Tests for FFmpeg argument construction."""

    @pytest.fixture
    def encoder(self):
        return NativeProcessEncoder(ffmpeg_path="/usr/bin/ffmpeg", preset="veryfast", crf=20)

    def test_video_source(self, encoder):
        """Test video sources apply the chain and copy audio."""
        cmd = encoder.build_command("drawtext=text=hi", MediaInfo(duration=10.0))
        assert cmd[:4] == ["/usr/bin/ffmpeg", "-hide_banner", "-i", "pipe:0"]
        assert cmd[cmd.index("-vf") + 1] == "drawtext=text=hi"
        assert cmd[cmd.index("-c:a") + 1] == "copy"
        assert "0:a?" in cmd
        assert cmd[-3:] == ["-f", "mp4", "pipe:1"]
        assert cmd[cmd.index("-movflags") + 1] == "frag_keyframe+empty_moov"

    def test_audio_only_source(self, encoder):
        """Test audio-only sources get a black canvas and are clipped."""
        media = MediaInfo(duration=30.0, has_video=False, has_audio=True, audio_codec="mp3")
        cmd = encoder.build_command("drawtext=text=hi", media, duration=12.5, background_size=(720, 1280))
        assert "color=c=black:s=720x1280:r=25" in cmd
        assert cmd[cmd.index("-filter_complex") + 1] == "[1:v]drawtext=text=hi[captioned]"
        assert cmd[cmd.index("-c:a") + 1] == "copy"
        assert cmd[cmd.index("-t") + 1] == "12.5"
        assert "-shortest" in cmd

    def test_audio_only_reencodes_incompatible_codec(self, encoder):
        """Test non-MP4 audio codecs are re-encoded to AAC."""
        media = MediaInfo(duration=5.0, has_video=False, has_audio=True, audio_codec="pcm_s16le")
        cmd = encoder.build_command("null", media)
        assert cmd[cmd.index("-c:a") + 1] == "aac"

    def test_fontconfig_env(self):
        """Test FONTCONFIG_FILE is passed to the encoder."""
        encoder = NativeProcessEncoder(ffmpeg_path="ffmpeg", fontconfig_file="/app/fonts.conf")
        assert encoder.build_env()["FONTCONFIG_FILE"] == "/app/fonts.conf"


class TestParseProgressTime:
    """Tests for FFmpeg stats parsing."""

    def test_time_field(self):
        assert parse_progress_time("frame=50 fps=25 time=00:01:02.50 speed=1x") == pytest.approx(62.5)

    def test_no_time(self):
        assert parse_progress_time("Stream #0:0: Video: h264") is None


class TestNativeProcessEncoder:
    """Tests for streaming media through the encoder subprocess."""

    @pytest.mark.asyncio
    async def test_large_payload_streams_without_deadlock(self):
        """Test several MB pass through stdin and stdout concurrently."""
        payload = bytes(range(256)) * (8 * 1024 * 4)  # 8 MiB
        encoder = ScriptEncoder(ECHO_SCRIPT)
        sink = CollectingSink()
        resources = JobResources("job-1")
        progress: list[float] = []

        written = await asyncio.wait_for(
            encoder.encode(
                iter_payload(payload), "null", sink, resources,
                duration=2.0, on_progress=progress.append,
            ),
            timeout=60,
        )

        assert written == len(payload)
        assert sink.data == payload
        assert progress == [0.5, 1.0]
        await resources.release()

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_runtime_error(self):
        """Test a failing encoder surfaces its exit code and diagnostics."""
        encoder = ScriptEncoder(FAIL_SCRIPT)
        resources = JobResources("job-1")

        with pytest.raises(EncoderRuntimeError) as exc_info:
            await encoder.encode(iter_payload(b"x" * 1_000_000), "null", CollectingSink(), resources)

        assert exc_info.value.returncode == 1
        assert "moov atom not found" in exc_info.value.diagnostics
        assert "moov atom" not in exc_info.value.message
        await resources.release()

    @pytest.mark.asyncio
    async def test_missing_binary_raises_launch_error(self):
        """Test an unstartable encoder raises EncoderLaunchError."""
        encoder = NativeProcessEncoder(ffmpeg_path="/nonexistent/ffmpeg")
        with pytest.raises(EncoderLaunchError):
            await encoder.encode(iter_payload(b"x"), "null", CollectingSink(), JobResources("job-1"))

    @pytest.mark.asyncio
    async def test_cancel_event_terminates_process(self):
        """Test cancellation kills the encoder and raises RenderCancelledError."""
        encoder = ScriptEncoder(HANG_SCRIPT)
        resources = JobResources("job-1")
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.3, cancel_event.set)

        with pytest.raises(RenderCancelledError):
            await asyncio.wait_for(
                encoder.encode(iter_payload(b""), "null", CollectingSink(), resources, cancel_event=cancel_event),
                timeout=30,
            )

        process_resource = resources.resources[0]
        await resources.release()
        assert process_resource.released


class TestStreamingSink:
    """Tests for the bounded output hand-off."""

    @pytest.mark.asyncio
    async def test_chunks_then_clean_end(self):
        """Test queued chunks are delivered before the end marker."""
        sink = StreamingSink(max_chunks=4)
        await sink.write(b"a")
        await sink.write(b"b")
        sink.close()
        assert [chunk async for chunk in sink.chunks()] == [b"a", b"b"]
        assert sink.bytes_written == 2

    @pytest.mark.asyncio
    async def test_error_after_drain(self):
        """Test a failure is raised only after queued chunks are read."""
        sink = StreamingSink()
        await sink.write(b"a")
        sink.fail(EncoderRuntimeError(1, "boom"))
        assert await sink.get() == b"a"
        with pytest.raises(EncoderRuntimeError):
            await sink.get()

    @pytest.mark.asyncio
    async def test_get_waits_for_writer(self):
        """Test get() waits until a chunk arrives."""
        sink = StreamingSink()
        getter = asyncio.create_task(sink.get())
        await asyncio.sleep(0)
        assert not getter.done()
        await sink.write(b"late")
        assert await asyncio.wait_for(getter, timeout=5) == b"late"

    @pytest.mark.asyncio
    async def test_backpressure(self):
        """Test write() blocks while the queue is full."""
        sink = StreamingSink(max_chunks=1)
        await sink.write(b"1")
        blocked = asyncio.create_task(sink.write(b"2"))
        await asyncio.sleep(0.05)
        assert not blocked.done()
        assert await sink.get() == b"1"
        await asyncio.wait_for(blocked, timeout=5)
        assert await sink.get() == b"2"


class TestNativeProcessBackend:
    """Tests for the native backend flow."""

    @pytest.fixture
    def backend_factory(self, test_settings, mocker):
        def factory(script=ECHO_SCRIPT, media=None, payload=b"m" * 300_000):
            fetcher = mocker.MagicMock()
            fetcher.open_stream = mocker.AsyncMock(return_value=iter_payload(payload))
            prober = mocker.MagicMock()
            prober.probe = mocker.AsyncMock(return_value=media or MediaInfo(duration=4.0))
            encoder = ScriptEncoder(script)
            backend = NativeProcessBackend(test_settings, fetcher=fetcher, prober=prober, encoder=encoder)
            return backend, encoder

        return factory

    def test_check_configuration(self, test_settings):
        """Test a missing FFmpeg path is a configuration error."""
        backend = NativeProcessBackend(test_settings)
        with pytest.raises(ConfigurationError):
            backend.check_configuration()

    @pytest.mark.asyncio
    async def test_render_streams_to_sink(self, backend_factory, make_context):
        """Test a render streams the encoder output and walks its statuses."""
        backend, encoder = backend_factory()
        sink = CollectingSink()
        context = make_context(sink=sink, capture_weight=backend.capture_weight)
        timeline = build_timeline([Segment("it's 5:00", 0.0, 2.0)])
        job = RenderJob("https://media.example/clip.mp4", timeline, RenderBackend.NATIVE_PROCESS)

        result = await backend.render(job, context)
        await context.resources.release()

        assert result.bytes_written == 300_000
        assert result.duration_seconds == 4.0
        assert len(sink.data) == 300_000
        assert context.statuses == [
            JobStatus.PREPARING, JobStatus.BUILDING_GRAPH, JobStatus.ENCODING, JobStatus.FINALIZING,
        ]
        command = encoder.commands[0]
        assert "text=it\\\\\\'s 5\\\\:00" in command[command.index("-vf") + 1]
        percents = [u.percent for u in context.updates]
        assert percents == sorted(percents)

    @pytest.mark.asyncio
    async def test_render_requires_sink(self, backend_factory, make_context, hello_timeline):
        backend, _ = backend_factory()
        job = RenderJob("https://media.example/clip.mp4", hello_timeline)
        with pytest.raises(ValueError):
            await backend.render(job, make_context())

    @pytest.mark.asyncio
    async def test_encoder_failure_propagates(self, backend_factory, make_context, hello_timeline):
        """Test an encoder crash surfaces as EncoderRuntimeError."""
        backend, _ = backend_factory(script=FAIL_SCRIPT)
        context = make_context(sink=CollectingSink())
        job = RenderJob("https://media.example/clip.mp4", hello_timeline)

        with pytest.raises(EncoderRuntimeError):
            await backend.render(job, context)
        assert await context.resources.release() >= 1
