"""
Adapter factory - hands out filesystem adapters by system tag and host id
"""
import logging
from typing import Callable, Dict, Optional

from filebridge.adapters.base import SYSTEM_LOCAL, SYSTEM_REMOTE, FileSystemAdapter, RemoteFileSystemAdapter
from filebridge.adapters.local_fs import LocalFileSystemAdapter
from filebridge.adapters.sftp_fs import SftpFileSystemAdapter
from filebridge.config import DEFAULT_CHUNK_SIZE, HostDirectory, SshHostConfig
from filebridge.errors import InvalidParamsError

logger = logging.getLogger(__name__)

RemoteAdapterBuilder = Callable[[SshHostConfig], RemoteFileSystemAdapter]


class AdapterFactory:
    """One shared local adapter, one cached remote adapter per host"""

    def __init__(
        self,
        hosts: HostDirectory,
        local: Optional[LocalFileSystemAdapter] = None,
        remote_builder: Optional[RemoteAdapterBuilder] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.hosts = hosts
        self.local = local or LocalFileSystemAdapter(chunk_size=chunk_size)
        self._remote_builder = remote_builder or (lambda config: SftpFileSystemAdapter(config, chunk_size=chunk_size))
        self._remotes: Dict[str, RemoteFileSystemAdapter] = {}

    def remote(self, host_id: str) -> RemoteFileSystemAdapter:
        adapter = self._remotes.get(host_id)
        if adapter is None:
            config = self.hosts.get(host_id)
            adapter = self._remote_builder(config)
            self._remotes[host_id] = adapter
            logger.info(f"Created remote adapter for host {host_id} ({config.host})")
        return adapter

    def get(self, file_system: str, host_id: Optional[str] = None) -> FileSystemAdapter:
        if file_system == SYSTEM_LOCAL:
            return self.local
        if file_system == SYSTEM_REMOTE:
            if not host_id:
                raise InvalidParamsError("hostId is required for remote operations")
            return self.remote(host_id)
        raise InvalidParamsError(f"Unknown file system: {file_system}")

    async def close(self):
        for host_id, adapter in list(self._remotes.items()):
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Error closing adapter for {host_id}: {e}")
        self._remotes.clear()
