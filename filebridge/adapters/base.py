"""
Base interfaces for filesystem adapters
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, BinaryIO, Callable, Dict, List, Optional

from filebridge.errors import TransferCancelledError

logger = logging.getLogger(__name__)

SYSTEM_LOCAL = "local"
SYSTEM_REMOTE = "remote"

TYPE_DIRECTORY = "directory"
TYPE_REGULAR = "regular"
TYPE_SYMLINK = "symlink"

CHECKSUM_ALGORITHMS = ("md5", "sha1", "sha256")

ChmodProgressCallback = Callable[[int, int, str], None]
BytesCallback = Callable[[int], None]


@dataclass
class FileEntry:
    """One filesystem node, identical in shape for local and remote"""
    name: str
    path: str
    size: int
    type: str
    mod_time: float
    permissions: str
    owner: str = ""
    group: str = ""
    symlink_target: Optional[str] = None

    @property
    def is_directory(self) -> bool:
        return self.type == TYPE_DIRECTORY

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "type": self.type,
            "modTime": datetime.fromtimestamp(self.mod_time, tz=timezone.utc).isoformat(),
            "permissions": self.permissions,
            "owner": self.owner,
            "group": self.group,
        }
        if self.symlink_target is not None:
            data["symlinkTarget"] = self.symlink_target
        return data


class TransferControl:
    """Cooperative pause/cancel switch checked by transports between chunks"""

    def __init__(self):
        self._running = asyncio.Event()
        self._running.set()
        self.cancelled = False

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def pause(self):
        self._running.clear()

    def resume(self):
        self._running.set()

    def cancel(self):
        self.cancelled = True
        # wake a paused transport so it can observe the cancellation
        self._running.set()

    async def checkpoint(self):
        if self.cancelled:
            raise TransferCancelledError("Transfer cancelled")
        if not self._running.is_set():
            await self._running.wait()
            if self.cancelled:
                raise TransferCancelledError("Transfer cancelled")


async def pump_stream(
    src: BinaryIO,
    dst: BinaryIO,
    control: Optional[TransferControl] = None,
    chunk_size: int = 256 * 1024,
    on_bytes: Optional[BytesCallback] = None,
    start: int = 0,
) -> int:
    """Copy src to dst chunk by chunk, honouring pause/cancel between chunks.

    Returns the byte count including the initial offset.
    """
    transferred = start
    while True:
        if control:
            await control.checkpoint()
        chunk = await asyncio.to_thread(src.read, chunk_size)
        if not chunk:
            break
        await asyncio.to_thread(dst.write, chunk)
        transferred += len(chunk)
        if on_bytes:
            on_bytes(transferred)
    return transferred


class FileSystemAdapter(ABC):
    """Operation contract shared by the local and remote filesystems"""

    system: str = SYSTEM_LOCAL

    @abstractmethod
    async def list_files(self, path: str) -> List[FileEntry]:
        pass

    @abstractmethod
    async def stat(self, path: str) -> FileEntry:
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        pass

    @abstractmethod
    async def delete(self, path: str):
        pass

    @abstractmethod
    async def mkdir(self, path: str):
        pass

    @abstractmethod
    async def rename(self, old_path: str, new_path: str):
        pass

    @abstractmethod
    async def copy(self, source_path: str, dest_path: str):
        pass

    @abstractmethod
    async def move(self, source_path: str, dest_path: str):
        pass

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        pass

    @abstractmethod
    async def write_file(self, path: str, content: bytes = b""):
        pass

    @abstractmethod
    async def calculate_checksum(self, path: str, algorithm: str) -> str:
        pass

    @abstractmethod
    async def search_files(
        self,
        base_path: str,
        pattern: Optional[str] = None,
        content: Optional[str] = None,
        recursive: bool = True,
    ) -> List[FileEntry]:
        pass

    @abstractmethod
    async def create_symlink(self, source_path: str, target_path: str):
        pass

    @abstractmethod
    async def resolve_symlink(self, symlink_path: str) -> str:
        pass

    @abstractmethod
    async def chmod(self, path: str, mode: str):
        pass

    @abstractmethod
    async def chmod_recursive(
        self,
        path: str,
        mode: str,
        on_progress: Optional[ChmodProgressCallback] = None,
    ):
        pass

    @abstractmethod
    async def get_disk_space(self, path: str) -> Dict[str, int]:
        pass


class RemoteFileSystemAdapter(FileSystemAdapter):
    """Remote side of the contract, plus the byte-moving transfer calls"""

    system = SYSTEM_REMOTE

    @abstractmethod
    async def upload(
        self,
        local_path: str,
        remote_path: str,
        offset: int = 0,
        control: Optional[TransferControl] = None,
        on_bytes: Optional[BytesCallback] = None,
    ) -> int:
        """Stream a local file to remote_path, appending from offset. Returns bytes on disk."""

    @abstractmethod
    async def download(
        self,
        remote_path: str,
        local_path: str,
        offset: int = 0,
        control: Optional[TransferControl] = None,
        on_bytes: Optional[BytesCallback] = None,
    ) -> int:
        """Stream remote_path into a local file, appending from offset. Returns bytes on disk."""

    async def close(self):
        pass
