"""
Transfer job queue - owns every upload/download job and is the only writer of
job state.
"""
import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field, ValidationError
from pydantic.alias_generators import to_camel

from filebridge.adapters.base import (
    SYSTEM_LOCAL,
    SYSTEM_REMOTE,
    TYPE_DIRECTORY,
    FileSystemAdapter,
    TransferControl,
)
from filebridge.adapters.factory import AdapterFactory
from filebridge.config import Settings
from filebridge.errors import InvalidParamsError, OperationFailedError, TransferCancelledError
from filebridge.speed_tracker import SpeedTracker
from filebridge.transfer_router import TransferRoute, route
from filebridge.utils import numbered_name, to_forward_slashes

logger = logging.getLogger(__name__)

CONFLICT_ACTIONS = ("overwrite", "resume", "rename", "skip")
UPDATE_THROTTLE_SECONDS = 0.2

QueueListener = Callable[[Dict[str, Any]], Any]


class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED}

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.ACTIVE, JobStatus.CANCELLED},
    JobStatus.ACTIVE: {JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED},
    JobStatus.PAUSED: {JobStatus.ACTIVE, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.ERROR: set(),
    JobStatus.CANCELLED: set(),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConflictInfo(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    destination_path: str
    destination_size: int = 0
    source_size: int = 0


class TransferJob(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: Literal["upload", "download"] = "download"
    host_id: Optional[str] = None
    filename: str = ""
    local_path: str
    remote_path: str
    size: int = 0
    bytes_transferred: int = 0
    speed: float = 0.0
    progress: int = 0
    status: JobStatus = JobStatus.PENDING
    error: Optional[str] = None
    priority: int = 1
    created_at: int = Field(default_factory=_now_ms)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    conflict: Optional[ConflictInfo] = None

    @property
    def source_system(self) -> str:
        return SYSTEM_LOCAL if self.type == "upload" else SYSTEM_REMOTE

    @property
    def dest_system(self) -> str:
        return SYSTEM_REMOTE if self.type == "upload" else SYSTEM_LOCAL

    @property
    def source_path(self) -> str:
        return self.local_path if self.type == "upload" else self.remote_path

    @property
    def dest_path(self) -> str:
        return self.remote_path if self.type == "upload" else self.local_path

    def set_dest_path(self, path: str):
        if self.type == "upload":
            self.remote_path = path
        else:
            self.local_path = path

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class TransferQueueSummary(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    active_count: int
    total_speed: float
    queued_count: int


@dataclass
class _JobRuntime:
    control: TransferControl
    tracker: SpeedTracker
    task: Optional[asyncio.Task] = None
    decision: Optional[asyncio.Future] = None
    last_emit: float = field(default=0.0)


class TransferQueue:
    """Transfer jobs, their state machine and the tasks moving their bytes.

    All mutation happens on the event loop thread: public calls, transport
    byte callbacks and task completions. There is no lock because there is
    no second writer.
    """

    def __init__(self, adapters: AdapterFactory, settings: Optional[Settings] = None):
        self.adapters = adapters
        self.settings = settings or Settings()
        self._jobs: Dict[str, TransferJob] = {}
        self._runtime: Dict[str, _JobRuntime] = {}
        self._listeners: List[QueueListener] = []
        self._listener_tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: QueueListener):
        self._listeners.append(listener)

    def _emit(self, event_type: str, data: Dict[str, Any]):
        message = {"type": event_type, "data": data}
        for listener in self._listeners:
            try:
                result = listener(message)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception as e:
                logger.warning(f"Transfer listener failed for {event_type}: {e}")

    def _listener_done(self, task: asyncio.Task):
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Transfer listener failed: {task.exception()}")

    def _notify_job(self, job: TransferJob):
        self._emit("transfer.update", {"job": job.to_dict()})

    def _notify_queue(self):
        self._emit("transfer.queue", {
            "jobs": [j.to_dict() for j in self._jobs.values()],
            "summary": self.get_summary().model_dump(by_alias=True),
        })

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, job: TransferJob, new_status: JobStatus) -> bool:
        if new_status not in ALLOWED_TRANSITIONS[job.status]:
            logger.warning(f"Refusing transition {job.status.value} -> {new_status.value} for job {job.id}")
            return False
        job.status = new_status
        if new_status in TERMINAL_STATUSES:
            job.completed_at = _now_ms()
            job.speed = 0.0
        if new_status == JobStatus.PAUSED:
            job.speed = 0.0
        self._notify_job(job)
        self._notify_queue()
        return True

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def add_job(self, data: Union[TransferJob, Dict[str, Any]]) -> TransferJob:
        if self._closed:
            raise OperationFailedError("Transfer queue is shut down")
        try:
            raw = data.model_dump() if isinstance(data, TransferJob) else dict(data)
            job = TransferJob.model_validate(raw)
        except ValidationError as e:
            raise InvalidParamsError(f"Invalid transfer job: {e.errors()}")
        if job.id in self._jobs:
            raise InvalidParamsError(f"Duplicate transfer job id: {job.id}")

        job.status = JobStatus.PENDING
        job.progress = 0
        job.bytes_transferred = 0
        job.speed = 0.0
        job.error = None
        job.conflict = None
        job.started_at = None
        job.completed_at = None
        if not job.filename:
            job.filename = to_forward_slashes(job.source_path).rstrip("/").rsplit("/", 1)[-1]

        self._jobs[job.id] = job
        logger.info(f"Transfer job added: {job.filename} ({job.type}, {job.id})")
        self._notify_job(job)
        self._notify_queue()
        self._schedule()
        return job

    def get_job(self, job_id: str) -> Optional[TransferJob]:
        return self._jobs.get(job_id)

    def pause_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        runtime = self._runtime.get(job_id)
        if not job or job.status != JobStatus.ACTIVE or runtime is None:
            return False
        runtime.control.pause()
        self._transition(job, JobStatus.PAUSED)
        logger.info(f"Transfer job paused: {job_id}")
        self._schedule()
        return True

    def resume_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        runtime = self._runtime.get(job_id)
        if not job or job.status != JobStatus.PAUSED or runtime is None:
            return False
        if runtime.decision is not None and not runtime.decision.done():
            # waiting on a conflict; only resolve_conflict can continue it
            return False
        runtime.tracker.reset(job.bytes_transferred)
        self._transition(job, JobStatus.ACTIVE)
        runtime.control.resume()
        logger.info(f"Transfer job resumed: {job_id}")
        return True

    def cancel_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if not job or job.status in TERMINAL_STATUSES:
            return False
        self._transition(job, JobStatus.CANCELLED)
        runtime = self._runtime.get(job_id)
        if runtime is not None:
            runtime.control.cancel()
            if runtime.decision is not None and not runtime.decision.done():
                runtime.decision.set_result("skip")
        logger.info(f"Transfer job cancelled: {job_id}")
        self._schedule()
        return True

    def clear_completed(self) -> int:
        finished = [job_id for job_id, job in self._jobs.items() if job.status in TERMINAL_STATUSES]
        for job_id in finished:
            del self._jobs[job_id]
        if finished:
            logger.info(f"Cleared {len(finished)} finished transfer jobs")
        self._notify_queue()
        return len(finished)

    def resolve_conflict(self, job_id: str, action: str, apply_to_all: bool = False) -> int:
        if action not in CONFLICT_ACTIONS:
            raise InvalidParamsError(f"Unknown conflict action: {action}")

        targets = [job_id]
        if apply_to_all:
            targets += [other for other in self._jobs if other != job_id and self._awaiting_decision(other)]

        resolved = 0
        for target in targets:
            if not self._awaiting_decision(target):
                continue
            job = self._jobs[target]
            runtime = self._runtime[target]
            job.conflict = None
            if action == "skip":
                self._transition(job, JobStatus.CANCELLED)
                runtime.control.cancel()
            else:
                runtime.tracker.reset(job.bytes_transferred)
                self._transition(job, JobStatus.ACTIVE)
            runtime.decision.set_result(action)
            resolved += 1
            logger.info(f"Transfer conflict resolved: {target} -> {action}")
        return resolved

    def get_all_jobs(self) -> List[TransferJob]:
        return list(self._jobs.values())

    def get_summary(self) -> TransferQueueSummary:
        active = [j for j in self._jobs.values() if j.status == JobStatus.ACTIVE]
        return TransferQueueSummary(
            active_count=len(active),
            total_speed=sum(j.speed for j in active),
            queued_count=sum(1 for j in self._jobs.values() if j.status == JobStatus.PENDING),
        )

    async def shutdown(self):
        """Stop every running transfer. Called on process teardown."""
        self._closed = True
        for job in list(self._jobs.values()):
            if job.status not in TERMINAL_STATUSES:
                self.cancel_job(job.id)
        tasks = [rt.task for rt in self._runtime.values() if rt.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _awaiting_decision(self, job_id: str) -> bool:
        runtime = self._runtime.get(job_id)
        return (
            runtime is not None
            and runtime.decision is not None
            and not runtime.decision.done()
        )

    def _schedule(self):
        if self._closed:
            return
        active = [j for j in self._jobs.values() if j.status == JobStatus.ACTIVE]
        per_host: Dict[Optional[str], int] = {}
        for job in active:
            per_host[job.host_id] = per_host.get(job.host_id, 0) + 1

        pending = sorted(
            (j for j in self._jobs.values() if j.status == JobStatus.PENDING),
            key=lambda j: (-j.priority, j.created_at),
        )
        for job in pending:
            if len(active) >= self.settings.max_concurrent_transfers:
                break
            if per_host.get(job.host_id, 0) >= self.settings.max_concurrent_per_host:
                continue
            self._start(job)
            active.append(job)
            per_host[job.host_id] = per_host.get(job.host_id, 0) + 1

    def _start(self, job: TransferJob):
        runtime = _JobRuntime(
            control=TransferControl(),
            tracker=SpeedTracker(smoothing=self.settings.speed_smoothing),
        )
        self._runtime[job.id] = runtime
        job.started_at = _now_ms()
        self._transition(job, JobStatus.ACTIVE)
        runtime.task = asyncio.create_task(self._run_job(job, runtime))

    # ------------------------------------------------------------------
    # Running a job
    # ------------------------------------------------------------------

    async def _run_job(self, job: TransferJob, runtime: _JobRuntime):
        try:
            selected = route(job.source_system, job.dest_system, is_copy=True)
            remote = self.adapters.remote(job.host_id)
            local = self.adapters.local
            source_adapter, dest_adapter = (local, remote) if selected is TransferRoute.UPLOAD else (remote, local)

            source = await source_adapter.stat(job.source_path)
            await runtime.control.checkpoint()
            if source.type == TYPE_DIRECTORY:
                raise OperationFailedError(f"Cannot transfer a directory as one job: {job.source_path}")
            job.size = source.size

            offset = 0
            if await dest_adapter.exists(job.dest_path):
                action = await self._wait_for_decision(job, runtime, dest_adapter)
                await runtime.control.checkpoint()
                offset = await self._apply_decision(job, action, dest_adapter)

            job.bytes_transferred = offset
            runtime.tracker.reset(offset)

            def on_bytes(count: int):
                self._on_bytes(job, runtime, count)

            if selected is TransferRoute.UPLOAD:
                await remote.upload(job.local_path, job.remote_path, offset, runtime.control, on_bytes)
            else:
                await remote.download(job.remote_path, job.local_path, offset, runtime.control, on_bytes)

            # a pause or cancel can land after the last chunk while the transport closes
            if job.status == JobStatus.PAUSED:
                await runtime.control.checkpoint()
            if job.status != JobStatus.ACTIVE:
                logger.info(f"Transfer finished while {job.status.value}, not completing: {job.filename}")
                return

            job.size = max(job.size, job.bytes_transferred)
            job.bytes_transferred = job.size
            job.progress = 100
            self._transition(job, JobStatus.COMPLETED)
            logger.info(f"Transfer completed: {job.filename} ({job.size} bytes)")
        except TransferCancelledError:
            logger.info(f"Transfer stopped after cancellation: {job.filename}")
        except asyncio.CancelledError:
            if job.status not in TERMINAL_STATUSES:
                self._transition(job, JobStatus.CANCELLED)
            raise
        except Exception as e:
            logger.error(f"Transfer failed: {job.filename}: {e}")
            if job.status not in TERMINAL_STATUSES:
                job.error = str(e) or e.__class__.__name__
                if job.status == JobStatus.PAUSED:
                    self._transition(job, JobStatus.ACTIVE)
                self._transition(job, JobStatus.ERROR)
        finally:
            self._runtime.pop(job.id, None)
            self._schedule()

    async def _wait_for_decision(self, job: TransferJob, runtime: _JobRuntime, dest_adapter: FileSystemAdapter) -> str:
        existing = await dest_adapter.stat(job.dest_path)
        await runtime.control.checkpoint()
        job.conflict = ConflictInfo(
            destination_path=job.dest_path,
            destination_size=existing.size,
            source_size=job.size,
        )
        runtime.decision = asyncio.get_running_loop().create_future()
        self._transition(job, JobStatus.PAUSED)
        self._emit("transfer.conflict", {
            "transferId": job.id,
            "sourceFile": job.source_path,
            "targetStats": {"size": existing.size, "modTime": existing.to_dict()["modTime"]},
        })
        logger.info(f"Transfer conflict: {job.dest_path} already exists")
        self._schedule()
        return await runtime.decision

    async def _apply_decision(self, job: TransferJob, action: str, dest_adapter: FileSystemAdapter) -> int:
        """Returns the byte offset to continue from."""
        if action == "resume":
            existing = await dest_adapter.stat(job.dest_path)
            if 0 < existing.size < job.size:
                logger.info(f"Resuming {job.filename} from byte {existing.size} of {job.size}")
                return existing.size
            return 0
        if action == "rename":
            new_path = await self._free_name(dest_adapter, job.dest_path)
            job.set_dest_path(new_path)
            self._notify_job(job)
            logger.info(f"Transfer renamed to {new_path}")
        return 0

    async def _free_name(self, adapter: FileSystemAdapter, path: str) -> str:
        normalized = to_forward_slashes(path)
        directory, _, name = normalized.rpartition("/")
        n = 1
        while True:
            candidate = f"{directory}/{numbered_name(name, n)}" if directory or normalized.startswith("/") else numbered_name(name, n)
            if not await adapter.exists(candidate):
                return candidate
            n += 1

    def _on_bytes(self, job: TransferJob, runtime: _JobRuntime, count: int):
        if job.status in TERMINAL_STATUSES:
            return
        if count > job.size:
            job.size = count
        job.bytes_transferred = count
        job.speed = runtime.tracker.update(count)
        job.progress = min(99, int(count * 100 / job.size)) if job.size else 0

        now = time.monotonic()
        if now - runtime.last_emit >= UPDATE_THROTTLE_SECONDS:
            runtime.last_emit = now
            self._notify_job(job)
