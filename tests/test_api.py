"""
Tests for the HTTP API.

The app is exercised without its lifespan; each test wires a pipeline with
stub backends into app.state.
"""

import os

import pytest
from fastapi.testclient import TestClient

from animcap.auth import API_KEY_HEADER
from animcap.config import get_settings
from animcap.main import app
from animcap.routers import render
from animcap.services.errors import CaptureError, EncoderRuntimeError, MediaFetchError
from animcap.services.native_encoder import NativeProcessBackend
from animcap.services.render_job import EncoderBackend, JobStatus, RenderBackend, RenderJob, RenderResult
from animcap.services.render_pipeline import RenderJobProgress, RenderPipeline
from animcap.services.resource_manager import ResourceManager

VALID_BODY = {
    "mediaUrl": "https://media.example/talk.mp4",
    "segments": [
        {"text": "Hello", "startTime": 0.0, "endTime": 1.5, "animations": ["fadeIn"]},
        {"text": "World", "startTime": 1.5, "endTime": 3.0, "animations": ["bounceLetters"], "fontFamily": "Anton"},
    ],
}


class StubBackend(EncoderBackend):
    """Backend that streams to the sink or writes an output file."""

    def __init__(self, kind, settings, chunks=(b"chunk-1", b"chunk-2"), error=None):
        self.kind = kind
        self.settings = settings
        self.chunks = chunks
        self.error = error

    async def render(self, job, context):
        context.set_status(JobStatus.ENCODING)
        context.reporter.encode(0.5)
        if self.error:
            raise self.error

        data = b"".join(self.chunks)
        if context.sink is not None:
            for chunk in self.chunks:
                await context.sink.write(chunk)
            return RenderResult(job.job_id, self.kind, 3.0, bytes_written=len(data))

        os.makedirs(self.settings.output_directory, exist_ok=True)
        output_path = os.path.join(self.settings.output_directory, f"{job.job_id}.mp4")
        with open(output_path, "wb") as f:
            f.write(data)
        return RenderResult(job.job_id, self.kind, 3.0, output_path=output_path, bytes_written=len(data), has_audio=True)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Isolate settings and job storage between tests."""
    for variable in ("FFMPEG_PATH", "FFPROBE_PATH", "ANIMCAP_API_KEY"):
        monkeypatch.delenv(variable, raising=False)
    get_settings.cache_clear()
    monkeypatch.setattr(render, "_jobs", {})
    monkeypatch.setattr(render, "_job_store", {})
    monkeypatch.setattr(render, "_job_results", {})
    monkeypatch.setattr(render, "_expiry_tasks", set())
    monkeypatch.setattr(render, "_render_semaphore", None)
    yield
    get_settings.cache_clear()
    app.state.render_pipeline = None
    app.state.font_catalog = None
    app.state.embedded_module = None


@pytest.fixture
def wire_pipeline(font_catalog, test_settings):
    """Install a pipeline with the given backends into app.state."""

    def factory(native=None, embedded=None):
        backends = {
            RenderBackend.NATIVE_PROCESS: native or StubBackend(RenderBackend.NATIVE_PROCESS, test_settings),
            RenderBackend.EMBEDDED: embedded or StubBackend(RenderBackend.EMBEDDED, test_settings),
        }
        pipeline = RenderPipeline(
            font_catalog,
            backends,
            settings=test_settings,
            resource_manager=ResourceManager(),
            progress_callback=render.progress_callback,
        )
        app.state.render_pipeline = pipeline
        app.state.font_catalog = font_catalog
        app.state.embedded_module = None
        return pipeline

    return factory


@pytest.fixture
def client():
    return TestClient(app)


class TestHealth:
    """Tests for health endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "version": "1.0.0"}

    def test_versions_agree(self, client):
        """Test health, root and the OpenAPI document report one version."""
        assert client.get("/health").json()["version"] == app.version
        assert client.get("/").json()["version"] == app.version
        assert client.get("/openapi.json").json()["info"]["version"] == app.version

    def test_readiness(self, client, wire_pipeline):
        """Test readiness reports fonts and encoder status."""
        wire_pipeline()
        data = client.get("/health/ready").json()
        assert data["font_catalog"] == "ready"
        assert data["native_encoder"] == "not_configured"
        assert data["font_families"] == ["anton", "bangers", "roboto-bold"]

    def test_readiness_without_fonts(self, client):
        data = client.get("/health/ready").json()
        assert data["ready"] is False
        assert data["font_catalog"] == "not_loaded"

    def test_root(self, client):
        assert client.get("/").json()["status"] == "running"


class TestRequestValidation:
    """Tests for malformed request bodies."""

    def test_invalid_body_is_400(self, client, wire_pipeline):
        """Test schema violations return the error envelope with details."""
        wire_pipeline()
        response = client.post("/render-video", json={"mediaUrl": "not a url", "segments": []})
        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Invalid request body"
        assert isinstance(data["details"], list) and data["details"]
        assert {"loc", "msg", "type"} <= set(data["details"][0])

    def test_end_before_start(self, client, wire_pipeline):
        wire_pipeline()
        body = {"mediaUrl": VALID_BODY["mediaUrl"], "segments": [{"text": "x", "startTime": 2, "endTime": 1}]}
        assert client.post("/render-video", json=body).status_code == 400

    def test_unknown_animation(self, client, wire_pipeline):
        wire_pipeline()
        body = {
            "mediaUrl": VALID_BODY["mediaUrl"],
            "segments": [{"text": "x", "startTime": 0, "endTime": 1, "animations": ["spin"]}],
        }
        assert client.post("/render-jobs", json=body).status_code == 400

    def test_blank_captions_only(self, client, wire_pipeline):
        """Test a timeline with no text left after normalization is rejected."""
        wire_pipeline()
        body = {"mediaUrl": VALID_BODY["mediaUrl"], "segments": [{"text": "   ", "startTime": 0, "endTime": 1}]}
        response = client.post("/render-video", json=body)
        assert response.status_code == 400
        assert response.json()["code"] == "EMPTY_TIMELINE"


class TestRenderVideo:
    """Tests for the streaming native endpoint."""

    def test_streams_output(self, client, wire_pipeline):
        """Test encoded chunks are streamed back as video/mp4."""
        wire_pipeline()
        response = client.post("/render-video", json=VALID_BODY)
        assert response.status_code == 200
        assert response.headers["content-type"] == "video/mp4"
        assert response.headers["X-Render-Job-Id"]
        assert response.content == b"chunk-1chunk-2"

    def test_ffmpeg_not_configured(self, client, wire_pipeline, test_settings):
        """Test a missing FFmpeg path fails with 503 before any bytes."""
        wire_pipeline(native=NativeProcessBackend(test_settings))
        response = client.post("/render-video", json=VALID_BODY)
        assert response.status_code == 503
        assert response.json() == {"error": "Video encoder is not available", "code": "ENCODER_UNAVAILABLE"}

    @pytest.mark.parametrize("error, status_code, code", [
        (MediaFetchError("HTTP 404"), 502, "MEDIA_FETCH_FAILED"),
        (EncoderRuntimeError(1, "moov atom not found"), 500, "ENCODER_FAILED"),
    ])
    def test_failure_before_first_byte(self, client, wire_pipeline, test_settings, error, status_code, code):
        """Test failures before streaming starts map to their status without diagnostics."""
        wire_pipeline(native=StubBackend(RenderBackend.NATIVE_PROCESS, test_settings, error=error))
        response = client.post("/render-video", json=VALID_BODY)
        assert response.status_code == status_code
        assert response.json()["code"] == code
        assert "moov" not in response.text

    def test_pipeline_not_initialized(self, client):
        assert client.post("/render-video", json=VALID_BODY).status_code == 503


class TestRenderJobs:
    """Tests for background render jobs."""

    def test_submit_status_and_download(self, client, wire_pipeline):
        """Test a submitted job completes and its output can be downloaded."""
        wire_pipeline()
        response = client.post("/render-jobs", json=VALID_BODY)
        assert response.status_code == 202
        data = response.json()
        assert data["backend"] == "embedded"
        job_id = data["job_id"]

        status = client.get(f"/render-jobs/{job_id}").json()
        assert status["status"] == "completed"
        assert status["progress_percent"] == 100
        assert status["output_url"] == f"/render-jobs/{job_id}/output"
        assert status["has_audio"] is True

        output = client.get(f"/render-jobs/{job_id}/output")
        assert output.status_code == 200
        assert output.content == b"chunk-1chunk-2"

    def test_failed_job(self, client, wire_pipeline, test_settings):
        """Test a failed job reports its error code and has no output."""
        wire_pipeline(embedded=StubBackend(RenderBackend.EMBEDDED, test_settings, error=CaptureError(7, "boom")))
        job_id = client.post("/render-jobs", json=VALID_BODY).json()["job_id"]

        status = client.get(f"/render-jobs/{job_id}").json()
        assert status["status"] == "failed"
        assert status["error_code"] == "CAPTURE_FAILED"
        assert client.get(f"/render-jobs/{job_id}/output").status_code == 409

    def test_native_job_unconfigured(self, client, wire_pipeline, test_settings):
        """Test submitting to an unconfigured backend fails immediately."""
        wire_pipeline(native=NativeProcessBackend(test_settings))
        response = client.post("/render-jobs", json={**VALID_BODY, "backend": "native"})
        assert response.status_code == 503

    def test_unknown_job(self, client, wire_pipeline):
        wire_pipeline()
        assert client.get("/render-jobs/nope").status_code == 404
        assert client.get("/render-jobs/nope/output").status_code == 404
        assert client.delete("/render-jobs/nope").status_code == 404

    def test_cancel_pending_job(self, client, wire_pipeline, hello_timeline):
        """Test DELETE signals cancellation to a job that has not finished."""
        wire_pipeline()
        job = RenderJob("https://media.example/a.mp4", hello_timeline, RenderBackend.EMBEDDED)
        render._jobs[job.job_id] = job

        assert client.delete(f"/render-jobs/{job.job_id}").status_code == 204
        assert job.is_cancelled

    def test_cancel_finished_job(self, client, wire_pipeline):
        wire_pipeline()
        job_id = client.post("/render-jobs", json=VALID_BODY).json()["job_id"]
        assert client.delete(f"/render-jobs/{job_id}").status_code == 409

    @pytest.mark.parametrize("backend_error", [None, CaptureError(3, "boom")])
    def test_finished_job_is_scheduled_to_expire(self, client, wire_pipeline, test_settings, mocker, backend_error):
        """Test both completed and failed background jobs are queued for eviction."""
        schedule = mocker.patch.object(render, "_schedule_expiry")
        wire_pipeline(embedded=StubBackend(RenderBackend.EMBEDDED, test_settings, error=backend_error))
        job_id = client.post("/render-jobs", json=VALID_BODY).json()["job_id"]
        schedule.assert_called_once_with(job_id)

    @pytest.mark.asyncio
    async def test_expired_job_is_forgotten(self, client, hello_timeline, tmp_path):
        """Test expiry drops every record of the job and deletes its output."""
        job = RenderJob("https://media.example/a.mp4", hello_timeline, RenderBackend.EMBEDDED)
        job.status = JobStatus.COMPLETED
        output = tmp_path / f"{job.job_id}.mp4"
        output.write_bytes(b"mp4")
        render._jobs[job.job_id] = job
        render._job_store[job.job_id] = RenderJobProgress(job.job_id, JobStatus.COMPLETED, 100, "Render complete!")
        render._job_results[job.job_id] = RenderResult(job.job_id, RenderBackend.EMBEDDED, 2.0, output_path=str(output))

        await render._expire_job(job.job_id, 0)

        assert job.job_id not in render._jobs
        assert job.job_id not in render._job_store
        assert job.job_id not in render._job_results
        assert not output.exists()
        assert client.get(f"/render-jobs/{job.job_id}").status_code == 404

    @pytest.mark.asyncio
    async def test_expire_without_output(self):
        """Test a job that produced no file (failed or streamed) still expires."""
        render._job_store["job-x"] = RenderJobProgress("job-x", JobStatus.FAILED, 10, "Processing failed")
        await render._expire_job("job-x", 0)
        assert "job-x" not in render._job_store


class TestApiKey:
    """Tests for the optional API key."""

    @pytest.fixture
    def keyed(self, monkeypatch, wire_pipeline):
        monkeypatch.setenv("ANIMCAP_API_KEY", "secret-key")
        get_settings.cache_clear()
        wire_pipeline()

    def test_missing_key(self, client, keyed):
        assert client.post("/render-jobs", json=VALID_BODY).status_code == 401

    def test_wrong_key(self, client, keyed):
        response = client.post("/render-jobs", json=VALID_BODY, headers={API_KEY_HEADER: "nope"})
        assert response.status_code == 401

    def test_correct_key(self, client, keyed):
        response = client.post("/render-jobs", json=VALID_BODY, headers={API_KEY_HEADER: "secret-key"})
        assert response.status_code == 202

    def test_health_is_open(self, client, keyed):
        assert client.get("/health").status_code == 200
