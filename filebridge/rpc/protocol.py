"""
RPC wire format: envelopes, method names and parameter models
"""
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

REQUEST_TYPE = "rpc-request"
RESPONSE_TYPE = "rpc-response"


class RpcMethod(str, Enum):
    TRANSFER_ADD_JOB = "transfer.addJob"
    TRANSFER_PAUSE_JOB = "transfer.pauseJob"
    TRANSFER_RESUME_JOB = "transfer.resumeJob"
    TRANSFER_CANCEL_JOB = "transfer.cancelJob"
    TRANSFER_CLEAR_COMPLETED = "transfer.clearCompleted"
    TRANSFER_GET_ALL_JOBS = "transfer.getAllJobs"
    TRANSFER_RESOLVE_CONFLICT = "transfer.resolveConflict"
    TRANSFER_DROP = "transfer.drop"

    FS_LIST = "fs.list"
    FS_STAT = "fs.stat"
    FS_DELETE = "fs.delete"
    FS_MKDIR = "fs.mkdir"
    FS_RENAME = "fs.rename"
    FS_NEW_FILE = "fs.newFile"
    FS_CHECKSUM = "fs.checksum"
    FS_SEARCH = "fs.search"
    FS_CREATE_SYMLINK = "fs.createSymlink"
    FS_RESOLVE_SYMLINK = "fs.resolveSymlink"
    FS_CHMOD = "fs.chmod"
    FS_BULK_RENAME = "fs.bulkRename"
    FS_DISK_SPACE = "fs.diskSpace"

    @classmethod
    def lookup(cls, name: str) -> Optional["RpcMethod"]:
        try:
            return cls(name)
        except ValueError:
            return None


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

class RpcErrorBody(BaseModel):
    code: int
    message: str
    data: Any = None


class RpcRequest(BaseModel):
    id: str
    method: str
    params: Any = None


class RpcResponse(BaseModel):
    id: Optional[str] = None
    result: Any = None
    error: Optional[RpcErrorBody] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"id": self.id, "error": self.error.model_dump(exclude_none=True)}
        return {"id": self.id, "result": self.result}


def request_envelope(request: RpcRequest) -> Dict[str, Any]:
    return {"type": REQUEST_TYPE, "request": request.model_dump()}


def response_envelope(response: RpcResponse) -> Dict[str, Any]:
    return {"type": RESPONSE_TYPE, "response": response.to_dict()}


# ---------------------------------------------------------------------------
# Parameter models
# ---------------------------------------------------------------------------

class RpcParams(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True, "extra": "ignore"}


class AddJobParams(RpcParams):
    job: Dict[str, Any]


class JobIdParams(RpcParams):
    job_id: str


class ResolveConflictParams(RpcParams):
    transfer_id: str
    action: Literal["overwrite", "resume", "rename", "skip"]
    apply_to_all: bool = False


class PaneModel(RpcParams):
    system: Literal["local", "remote"]
    path: str = ""


class DropParams(RpcParams):
    host_id: Optional[str] = None
    source_paths: List[str] = Field(min_length=1)
    target_path: str
    source_system: Literal["local", "remote"]
    target_pane: str
    panes: Dict[str, PaneModel]
    modifier: Optional[str] = None


class FsParams(RpcParams):
    host_id: Optional[str] = None
    file_system: Literal["local", "remote"] = "remote"


class PathParams(FsParams):
    path: str


class ListParams(PathParams):
    panel_id: Optional[str] = None


class RenameParams(FsParams):
    old_path: str
    new_path: str


class ChecksumParams(PathParams):
    algorithm: str = "sha256"


class SearchParams(PathParams):
    pattern: Optional[str] = None
    content: Optional[str] = None
    recursive: bool = True


class CreateSymlinkParams(FsParams):
    source_path: str
    target_path: str


class ResolveSymlinkParams(FsParams):
    symlink_path: str


class ChmodParams(PathParams):
    octal: str
    recursive: bool = False


class RenameOperation(RpcParams):
    old_path: str
    new_path: str


class BulkRenameParams(FsParams):
    operations: List[RenameOperation]
