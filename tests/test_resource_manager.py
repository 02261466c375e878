"""
Tests for per-job resource cleanup.
"""

import asyncio
import sys

import pytest

from animcap.services.embedded_encoder import VirtualFileSystem
from animcap.services.resource_manager import JobResources, ResourceKind, ResourceManager


class TestJobResources:
    """Tests for JobResources."""

    @pytest.mark.asyncio
    async def test_releases_every_kind(self, tmp_path):
        """Test files, directories, VFS entries and closers are all released."""
        resources = JobResources("job-1")
        temp_file = tmp_path / "a.bin"
        temp_file.write_bytes(b"x")
        temp_dir = tmp_path / "work"
        (temp_dir / "nested").mkdir(parents=True)
        vfs = VirtualFileSystem()
        vfs.write_file("frame-00000.png", b"png")
        closed = []

        resources.register_file(str(temp_file))
        resources.register_directory(str(temp_dir))
        resources.register_vfs_entry(vfs, "frame-00000.png")
        resources.register_closer("client", lambda: closed.append("sync"))

        async def aclose():
            closed.append("async")

        resources.register_closer("response", aclose)

        assert await resources.release() == 5
        assert not temp_file.exists()
        assert not temp_dir.exists()
        assert vfs.list_files() == []
        assert closed == ["async", "sync"]

    @pytest.mark.asyncio
    async def test_reverse_order(self):
        """Test teardown runs in reverse registration order."""
        resources = JobResources("job-1")
        order = []
        for name in ("first", "second", "third"):
            resources.register_closer(name, lambda name=name: order.append(name))
        await resources.release()
        assert order == ["third", "second", "first"]

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_cleanup(self):
        """Test one failing closer does not skip the rest."""
        resources = JobResources("job-1")
        closed = []

        def broken():
            raise OSError("busy")

        resources.register_closer("ok-1", lambda: closed.append(1))
        resources.register_closer("broken", broken)
        resources.register_closer("ok-2", lambda: closed.append(2))

        assert await resources.release() == 2
        assert closed == [2, 1]

    @pytest.mark.asyncio
    async def test_release_exactly_once(self):
        """Test a second release does nothing."""
        resources = JobResources("job-1")
        calls = []
        resources.register_closer("once", lambda: calls.append(1))
        assert await resources.release() == 1
        assert await resources.release() == 0
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_register_after_release(self):
        """Test registering into a released scope fails."""
        resources = JobResources("job-1")
        await resources.release()
        with pytest.raises(RuntimeError):
            resources.register_closer("late", lambda: None)

    @pytest.mark.asyncio
    async def test_process_is_killed(self):
        """Test a running subprocess is killed on release."""
        process = await asyncio.create_subprocess_exec(
            sys.executable, "-c", "import time; time.sleep(30)",
        )
        resources = JobResources("job-1")
        resource = resources.register_process(process)
        assert resource.kind == ResourceKind.PROCESS

        await resources.release()
        assert process.returncode is not None


class TestResourceManager:
    """Tests for ResourceManager."""

    @pytest.mark.asyncio
    async def test_acquire_release(self):
        """Test jobs are tracked until released."""
        manager = ResourceManager()
        resources = manager.acquire("job-1")
        assert manager.acquire("job-1") is resources
        assert manager.active_jobs == ["job-1"]

        resources.register_closer("x", lambda: None)
        assert await manager.release("job-1") == 1
        assert manager.active_jobs == []
        assert await manager.release("job-1") == 0
