"""
fs.* RPC handlers - thin wrappers picking the adapter by fileSystem/hostId
"""
import logging
from typing import Any, Callable, Dict

from filebridge.adapters.base import SYSTEM_LOCAL
from filebridge.adapters.factory import AdapterFactory
from filebridge.rpc.protocol import (
    BulkRenameParams,
    ChecksumParams,
    ChmodParams,
    CreateSymlinkParams,
    ListParams,
    PathParams,
    RenameParams,
    ResolveSymlinkParams,
    RpcMethod,
    SearchParams,
)
from filebridge.rpc.router import RpcRouter
from filebridge.utils import resolve_local_path, to_forward_slashes

logger = logging.getLogger(__name__)

Publish = Callable[[Dict[str, Any]], None]


def register(rpc: RpcRouter, adapters: AdapterFactory, publish: Publish):

    @rpc.method(RpcMethod.FS_LIST, ListParams)
    async def list_files(params: ListParams):
        adapter = adapters.get(params.file_system, params.host_id)
        files = await adapter.list_files(params.path)
        current_path = params.path
        if params.file_system == SYSTEM_LOCAL:
            current_path = to_forward_slashes(resolve_local_path(params.path))
        return {
            "files": [f.to_dict() for f in files],
            "currentPath": current_path,
            "panelId": params.panel_id,
            "fileSystem": params.file_system,
        }

    @rpc.method(RpcMethod.FS_STAT, PathParams)
    async def stat(params: PathParams):
        adapter = adapters.get(params.file_system, params.host_id)
        return (await adapter.stat(params.path)).to_dict()

    @rpc.method(RpcMethod.FS_DELETE, PathParams)
    async def delete(params: PathParams):
        await adapters.get(params.file_system, params.host_id).delete(params.path)
        logger.info(f"Deleted {params.file_system}:{params.path}")

    @rpc.method(RpcMethod.FS_MKDIR, PathParams)
    async def mkdir(params: PathParams):
        await adapters.get(params.file_system, params.host_id).mkdir(params.path)

    @rpc.method(RpcMethod.FS_RENAME, RenameParams)
    async def rename(params: RenameParams):
        await adapters.get(params.file_system, params.host_id).rename(params.old_path, params.new_path)

    @rpc.method(RpcMethod.FS_NEW_FILE, PathParams)
    async def new_file(params: PathParams):
        await adapters.get(params.file_system, params.host_id).write_file(params.path, b"")

    @rpc.method(RpcMethod.FS_CHECKSUM, ChecksumParams)
    async def checksum(params: ChecksumParams):
        adapter = adapters.get(params.file_system, params.host_id)
        digest = await adapter.calculate_checksum(params.path, params.algorithm)
        return {
            "checksum": digest,
            "algorithm": params.algorithm,
            "filename": to_forward_slashes(params.path).rstrip("/").rsplit("/", 1)[-1],
        }

    @rpc.method(RpcMethod.FS_SEARCH, SearchParams)
    async def search(params: SearchParams):
        adapter = adapters.get(params.file_system, params.host_id)
        results = await adapter.search_files(params.path, params.pattern, params.content, params.recursive)
        return {"results": [r.to_dict() for r in results]}

    @rpc.method(RpcMethod.FS_CREATE_SYMLINK, CreateSymlinkParams)
    async def create_symlink(params: CreateSymlinkParams):
        adapter = adapters.get(params.file_system, params.host_id)
        await adapter.create_symlink(params.source_path, params.target_path)

    @rpc.method(RpcMethod.FS_RESOLVE_SYMLINK, ResolveSymlinkParams)
    async def resolve_symlink(params: ResolveSymlinkParams):
        adapter = adapters.get(params.file_system, params.host_id)
        return {"targetPath": await adapter.resolve_symlink(params.symlink_path)}

    @rpc.method(RpcMethod.FS_CHMOD, ChmodParams)
    async def chmod(params: ChmodParams):
        adapter = adapters.get(params.file_system, params.host_id)
        if not params.recursive:
            await adapter.chmod(params.path, params.octal)
            return

        def on_progress(current: int, total: int, current_path: str):
            publish({
                "type": "fs.chmodProgress",
                "data": {
                    "path": params.path,
                    "current": current,
                    "total": total,
                    "currentPath": current_path,
                },
            })

        await adapter.chmod_recursive(params.path, params.octal, on_progress)

    @rpc.method(RpcMethod.FS_BULK_RENAME, BulkRenameParams)
    async def bulk_rename(params: BulkRenameParams):
        adapter = adapters.get(params.file_system, params.host_id)
        # stops at the first failure; earlier renames stay applied
        for op in params.operations:
            await adapter.rename(op.old_path, op.new_path)
        logger.info(f"Renamed {len(params.operations)} entries")

    @rpc.method(RpcMethod.FS_DISK_SPACE, PathParams)
    async def disk_space(params: PathParams):
        return await adapters.get(params.file_system, params.host_id).get_disk_space(params.path)
