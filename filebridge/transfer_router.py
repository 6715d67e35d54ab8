"""
Transfer routing matrix: decides which concrete operation a drop turns into.

`route()` is the pure decision table. `TransferDispatcher` applies the
decision: same-system routes call the adapter directly, cross-system routes
become jobs on the transfer queue.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from filebridge.adapters.base import SYSTEM_LOCAL, SYSTEM_REMOTE, TYPE_DIRECTORY, FileSystemAdapter
from filebridge.adapters.factory import AdapterFactory
from filebridge.errors import InvalidParamsError
from filebridge.utils import join_target, to_forward_slashes

if TYPE_CHECKING:
    from filebridge.job_runner import TransferQueue

logger = logging.getLogger(__name__)

SYSTEMS = (SYSTEM_LOCAL, SYSTEM_REMOTE)
COPY_MODIFIERS = ("ctrl", "alt")


class TransferRoute(str, Enum):
    LOCAL_COPY = "local.copy"
    LOCAL_MOVE = "local.move"
    REMOTE_COPY = "remote.copy"
    REMOTE_MOVE = "remote.move"
    UPLOAD = "upload"
    DOWNLOAD = "download"

    @property
    def crosses_systems(self) -> bool:
        return self in (TransferRoute.UPLOAD, TransferRoute.DOWNLOAD)


_MATRIX = {
    (SYSTEM_LOCAL, SYSTEM_LOCAL, True): TransferRoute.LOCAL_COPY,
    (SYSTEM_LOCAL, SYSTEM_LOCAL, False): TransferRoute.LOCAL_MOVE,
    (SYSTEM_REMOTE, SYSTEM_REMOTE, True): TransferRoute.REMOTE_COPY,
    (SYSTEM_REMOTE, SYSTEM_REMOTE, False): TransferRoute.REMOTE_MOVE,
    # across systems the source is never removed, whatever the modifier
    (SYSTEM_LOCAL, SYSTEM_REMOTE, True): TransferRoute.UPLOAD,
    (SYSTEM_LOCAL, SYSTEM_REMOTE, False): TransferRoute.UPLOAD,
    (SYSTEM_REMOTE, SYSTEM_LOCAL, True): TransferRoute.DOWNLOAD,
    (SYSTEM_REMOTE, SYSTEM_LOCAL, False): TransferRoute.DOWNLOAD,
}


def route(source_system: str, dest_system: str, is_copy: bool) -> TransferRoute:
    """Pick the operation for a (source, destination, modifier) triple."""
    try:
        return _MATRIX[(source_system, dest_system, bool(is_copy))]
    except KeyError:
        raise InvalidParamsError(f"Unknown file system pair: {source_system} -> {dest_system}")


def is_copy_modifier(modifier: Optional[str]) -> bool:
    """Ctrl/Alt held during the drop means copy, no modifier means move."""
    return modifier in COPY_MODIFIERS


@dataclass
class PaneState:
    system: str
    path: str = ""


def resolve_target_system(target_pane: str, panes: Dict[str, PaneState]) -> str:
    """System tag of the pane that owns the drop target.

    Paths on the two panes may share prefixes, so the tag always comes from
    the pane, never from the path.
    """
    pane = panes.get(target_pane)
    if pane is None:
        raise InvalidParamsError(f"Unknown pane: {target_pane}")
    if pane.system not in SYSTEMS:
        raise InvalidParamsError(f"Unknown file system: {pane.system}")
    return pane.system


class TransferDispatcher:
    """Applies routing decisions. Holds no state of its own."""

    def __init__(self, adapters: AdapterFactory, queue: "TransferQueue"):
        self.adapters = adapters
        self.queue = queue

    async def drop(
        self,
        host_id: Optional[str],
        source_paths: List[str],
        target_path: str,
        source_system: str,
        dest_system: str,
        is_copy: bool,
    ) -> dict:
        selected = route(source_system, dest_system, is_copy)
        logger.info(f"Drop of {len(source_paths)} item(s) to {target_path}: {selected.value}")

        if not selected.crosses_systems:
            adapter = self.adapters.get(source_system, host_id)
            for source in source_paths:
                dest = join_target(target_path, source)
                if selected in (TransferRoute.LOCAL_COPY, TransferRoute.REMOTE_COPY):
                    await adapter.copy(source, dest)
                else:
                    await adapter.move(source, dest)
            return {"route": selected.value, "jobIds": []}

        if not host_id:
            raise InvalidParamsError("hostId is required for transfers")
        source_adapter = self.adapters.get(source_system, host_id)
        dest_adapter = self.adapters.get(dest_system, host_id)
        job_type = "upload" if selected is TransferRoute.UPLOAD else "download"

        job_ids = []
        for source in source_paths:
            dest = join_target(target_path, source)
            for file_source, file_dest, size in await self._expand(source_adapter, dest_adapter, source, dest):
                local_path, remote_path = (file_source, file_dest) if job_type == "upload" else (file_dest, file_source)
                job = self.queue.add_job({
                    "type": job_type,
                    "hostId": host_id,
                    "filename": to_forward_slashes(file_source).rsplit("/", 1)[-1],
                    "localPath": local_path,
                    "remotePath": remote_path,
                    "size": size,
                })
                job_ids.append(job.id)
        return {"route": selected.value, "jobIds": job_ids}

    async def _expand(
        self,
        source_adapter: FileSystemAdapter,
        dest_adapter: FileSystemAdapter,
        source: str,
        dest: str,
    ) -> List[Tuple[str, str, int]]:
        """Flatten a dropped directory into per-file transfers.

        Destination directories are created up front so every job only has to
        move bytes.
        """
        entry = await source_adapter.stat(source)
        if entry.type != TYPE_DIRECTORY:
            return [(source, dest, entry.size)]

        root = entry.path.rstrip("/")
        children = await source_adapter.search_files(source, None, None, True)
        dirs = sorted((c for c in children if c.type == TYPE_DIRECTORY), key=lambda c: c.path.count("/"))

        await self._ensure_dir(dest_adapter, dest)
        for child in dirs:
            await self._ensure_dir(dest_adapter, dest + child.path[len(root):])

        files = []
        for child in children:
            if child.type != TYPE_DIRECTORY:
                files.append((child.path, dest + child.path[len(root):], child.size))
        return files

    async def _ensure_dir(self, adapter: FileSystemAdapter, path: str):
        if not await adapter.exists(path):
            await adapter.mkdir(path)
