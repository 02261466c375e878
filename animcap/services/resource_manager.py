"""
Resource Manager - job-scoped temp resources with guaranteed teardown.

Every temp file, directory, subprocess, virtual-FS entry or open stream a
job creates is registered here at creation time. Releasing a job tears all
of them down in reverse order; one failing teardown never stops the rest.
"""

import asyncio
import inspect
import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

Closer = Callable[[], Union[None, Awaitable[None]]]


class ResourceKind(str, Enum):
    """Kind of a registered temp resource."""

    FILE = "file"
    DIRECTORY = "directory"
    PROCESS = "process"
    VFS_ENTRY = "vfs_entry"
    CLOSER = "closer"


@dataclass
class TempResource:
    """A single resource owned by one job."""

    job_id: str
    kind: ResourceKind
    label: str
    closer: Closer
    released: bool = False


class JobResources:
    """All temp resources owned by a single render job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._resources: list[TempResource] = []
        self._released = False

    def __len__(self) -> int:
        return sum(1 for r in self._resources if not r.released)

    @property
    def resources(self) -> list[TempResource]:
        return list(self._resources)

    @property
    def released(self) -> bool:
        return self._released

    def _register(self, kind: ResourceKind, label: str, closer: Closer) -> TempResource:
        if self._released:
            raise RuntimeError(f"Job {self.job_id} resources already released")
        resource = TempResource(job_id=self.job_id, kind=kind, label=label, closer=closer)
        self._resources.append(resource)
        logger.debug(f"Job {self.job_id}: registered {kind.value} {label}")
        return resource

    def register_file(self, path: str) -> TempResource:
        def remove() -> None:
            if os.path.exists(path):
                os.remove(path)

        return self._register(ResourceKind.FILE, path, remove)

    def register_directory(self, path: str) -> TempResource:
        def remove() -> None:
            if os.path.isdir(path):
                shutil.rmtree(path)

        return self._register(ResourceKind.DIRECTORY, path, remove)

    def register_process(self, process: asyncio.subprocess.Process) -> TempResource:
        async def terminate() -> None:
            if process.returncode is None:
                process.kill()
                await process.wait()

        return self._register(ResourceKind.PROCESS, f"pid {process.pid}", terminate)

    def register_vfs_entry(self, vfs: Any, name: str) -> TempResource:
        return self._register(ResourceKind.VFS_ENTRY, name, lambda: vfs.delete_file(name))

    def register_closer(self, label: str, closer: Closer) -> TempResource:
        return self._register(ResourceKind.CLOSER, label, closer)

    async def release(self) -> int:
        """
        Tear down every registered resource.

        Teardown runs in reverse registration order. Failures are logged and
        skipped. Safe to call more than once.

        Returns:
            Number of resources released by this call
        """
        released = 0
        for resource in reversed(self._resources):
            if resource.released:
                continue
            resource.released = True
            try:
                result = resource.closer()
                if inspect.isawaitable(result):
                    await result
                released += 1
            except Exception as e:
                logger.warning(
                    f"Job {self.job_id}: failed to release {resource.kind.value} {resource.label}: {e}"
                )
        self._released = True
        if released:
            logger.debug(f"Job {self.job_id}: released {released} resources")
        return released


class ResourceManager:
    """Registry of JobResources keyed by job id."""

    def __init__(self):
        self._jobs: dict[str, JobResources] = {}

    def acquire(self, job_id: str) -> JobResources:
        """Get (or create) the resource scope for a job."""
        resources = self._jobs.get(job_id)
        if resources is None:
            resources = JobResources(job_id)
            self._jobs[job_id] = resources
        return resources

    def get(self, job_id: str) -> Optional[JobResources]:
        return self._jobs.get(job_id)

    @property
    def active_jobs(self) -> list[str]:
        return list(self._jobs)

    async def release(self, job_id: str) -> int:
        """Release every resource owned by a job and forget the job."""
        resources = self._jobs.pop(job_id, None)
        if resources is None:
            return 0
        return await resources.release()
