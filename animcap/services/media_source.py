"""
Source media access: streaming fetch over HTTP and stream probing.

The native backend streams the source straight into the encoder's stdin
and probes it with ffprobe; the embedded backend fetches it whole into the
encoder's virtual filesystem.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

from animcap.config import get_settings
from animcap.services.errors import MediaFetchError
from animcap.services.resource_manager import JobResources

logger = logging.getLogger(__name__)

# Audio codecs an MP4 container accepts without re-encoding
MP4_AUDIO_CODECS = ("aac", "mp3", "alac", "opus")


@dataclass
class MediaInfo:
    """Stream layout of a source media file."""

    duration: Optional[float] = None
    has_video: bool = True
    has_audio: bool = True
    width: Optional[int] = None
    height: Optional[int] = None
    audio_codec: Optional[str] = None

    @classmethod
    def unknown(cls) -> "MediaInfo":
        """Assume a video with audio when the source cannot be probed."""
        return cls()

    @property
    def is_audio_only(self) -> bool:
        return self.has_audio and not self.has_video


class MediaFetcher:
    """
    Fetches source media over HTTP with httpx.

    Args:
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.media_fetch_timeout_seconds,
            follow_redirects=True,
            transport=self.transport,
        )

    async def open_stream(self, location: str, resources: JobResources) -> AsyncIterator[bytes]:
        """
        Open the source for streaming.

        The response and client are registered with the job's resources and
        closed on release.

        Args:
            location: http(s) URL of the source media
            resources: Resource scope of the owning job

        Returns:
            Async iterator over body chunks

        Raises:
            MediaFetchError: If the source is unreachable or answers non-OK
        """
        client = self._client()
        resources.register_closer(f"http client {location}", client.aclose)
        try:
            response = await client.send(client.build_request("GET", location), stream=True)
        except httpx.HTTPError as e:
            raise MediaFetchError(f"Failed to fetch source media {location}: {e}") from e

        resources.register_closer(f"http response {location}", response.aclose)
        if not response.is_success:
            raise MediaFetchError(
                f"Failed to fetch source media {location}: HTTP {response.status_code}"
            )

        logger.info(f"Streaming source media from {location}")
        return self._iter_body(response, location)

    async def _iter_body(self, response: httpx.Response, location: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes(self.settings.stream_chunk_size):
                yield chunk
        except httpx.HTTPError as e:
            raise MediaFetchError(f"Source media stream from {location} broke: {e}") from e

    async def fetch_bytes(self, location: str) -> bytes:
        """
        Download the whole source into memory.

        Raises:
            MediaFetchError: If the source is unreachable or answers non-OK
        """
        logger.info(f"Fetching source media from {location}")
        try:
            async with self._client() as client:
                async with client.stream("GET", location) as response:
                    if not response.is_success:
                        raise MediaFetchError(
                            f"Failed to fetch source media {location}: HTTP {response.status_code}"
                        )
                    chunks = []
                    async for chunk in response.aiter_bytes(self.settings.stream_chunk_size):
                        chunks.append(chunk)
        except httpx.HTTPError as e:
            raise MediaFetchError(f"Failed to fetch source media {location}: {e}") from e

        data = b"".join(chunks)
        logger.info(f"Source media fetched: {len(data) / 1024 / 1024:.1f} MB")
        return data


class MediaProber:
    """
    Probes source media with ffprobe.

    Probing is best effort: any failure yields MediaInfo.unknown() so the
    render proceeds as a video-with-audio source.
    """

    def __init__(self, ffprobe_path: str):
        self.settings = get_settings()
        self.ffprobe_path = ffprobe_path

    async def probe(self, location: str) -> MediaInfo:
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            location,
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning(f"ffprobe could not be started: {e}")
            return MediaInfo.unknown()

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.settings.probe_timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(f"ffprobe timed out for {location}")
            return MediaInfo.unknown()

        if process.returncode != 0:
            logger.warning(f"ffprobe failed for {location}: {stderr.decode(errors='replace')[-500:]}")
            return MediaInfo.unknown()

        try:
            return parse_ffprobe_output(json.loads(stdout))
        except ValueError as e:
            logger.warning(f"Unreadable ffprobe output for {location}: {e}")
            return MediaInfo.unknown()


def parse_ffprobe_output(data: dict) -> MediaInfo:
    """Build MediaInfo from ffprobe's JSON (-show_format -show_streams)."""
    streams = data.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"
                  and not s.get("disposition", {}).get("attached_pic")), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    duration = None
    raw_duration = data.get("format", {}).get("duration")
    if raw_duration not in (None, "N/A"):
        duration = float(raw_duration)

    return MediaInfo(
        duration=duration,
        has_video=video is not None,
        has_audio=audio is not None,
        width=int(video["width"]) if video and video.get("width") else None,
        height=int(video["height"]) if video and video.get("height") else None,
        audio_codec=audio.get("codec_name") if audio else None,
    )
