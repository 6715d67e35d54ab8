import asyncio
import os
from typing import List, Optional

import pytest

from filebridge.adapters.base import SYSTEM_REMOTE, RemoteFileSystemAdapter, pump_stream
from filebridge.adapters.factory import AdapterFactory
from filebridge.adapters.local_fs import LocalFileSystemAdapter
from filebridge.config import HostDirectory, Settings, SshHostConfig


class FakeRemoteAdapter(LocalFileSystemAdapter, RemoteFileSystemAdapter):
    """'Remote' side backed by a temp directory; records every transfer it runs."""

    system = SYSTEM_REMOTE

    def __init__(self, chunk_size: int = 64):
        super().__init__(chunk_size=chunk_size)
        self.hold: Optional[asyncio.Event] = None
        self.hold_close: Optional[asyncio.Event] = None
        self.closing: List[str] = []
        self.started: List[str] = []
        self.offsets: List[int] = []
        self.closed = False

    async def upload(self, local_path, remote_path, offset=0, control=None, on_bytes=None):
        return await self._transfer(local_path, remote_path, offset, control, on_bytes)

    async def download(self, remote_path, local_path, offset=0, control=None, on_bytes=None):
        return await self._transfer(remote_path, local_path, offset, control, on_bytes)

    async def _transfer(self, source, dest, offset, control, on_bytes):
        self.started.append(dest)
        self.offsets.append(offset)
        if self.hold is not None:
            await self.hold.wait()
        with open(source, "rb") as src, open(dest, "ab" if offset else "wb") as dst:
            src.seek(offset)
            transferred = await pump_stream(src, dst, control, self.chunk_size, on_bytes, offset)
            # past the last chunk checkpoint, like a slow remote close
            self.closing.append(dest)
            if self.hold_close is not None:
                await self.hold_close.wait()
            return transferred

    async def close(self):
        self.closed = True


@pytest.fixture
def remote():
    return FakeRemoteAdapter()


@pytest.fixture
def hosts():
    directory = HostDirectory()
    directory.add(SshHostConfig(id="h1", host="alpha.example"))
    directory.add(SshHostConfig(id="h2", host="beta.example"))
    return directory


@pytest.fixture
def adapters(hosts, remote):
    return AdapterFactory(hosts, remote_builder=lambda config: remote)


@pytest.fixture
def settings():
    return Settings(chunk_size=64)


@pytest.fixture
def tree(tmp_path):
    """local/ and remote/ roots with a small file in each"""
    local_root = tmp_path / "local"
    remote_root = tmp_path / "remote"
    local_root.mkdir()
    remote_root.mkdir()
    (local_root / "report.txt").write_bytes(b"L" * 1000)
    (remote_root / "data.bin").write_bytes(os.urandom(777))
    return tmp_path


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


async def wait_for_status(queue, job_id, *statuses, timeout=5.0):
    """Poll until the job reaches one of the given statuses."""
    wanted = {getattr(s, "value", s) for s in statuses}
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = queue.get_job(job_id)
        if job is not None and job.status.value in wanted:
            return job
        if loop.time() > deadline:
            current = job.status.value if job else None
            raise AssertionError(f"job {job_id} stuck in {current}, wanted {sorted(wanted)}")
        await asyncio.sleep(0.01)
