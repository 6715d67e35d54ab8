"""
transfer.* RPC handlers
"""
import logging

from filebridge.job_runner import TransferQueue
from filebridge.rpc.protocol import (
    AddJobParams,
    DropParams,
    JobIdParams,
    ResolveConflictParams,
    RpcMethod,
)
from filebridge.rpc.router import RpcRouter
from filebridge.transfer_router import PaneState, TransferDispatcher, is_copy_modifier, resolve_target_system

logger = logging.getLogger(__name__)


def register(rpc: RpcRouter, queue: TransferQueue, dispatcher: TransferDispatcher):

    @rpc.method(RpcMethod.TRANSFER_ADD_JOB, AddJobParams)
    async def add_job(params: AddJobParams):
        queue.add_job(params.job)

    @rpc.method(RpcMethod.TRANSFER_PAUSE_JOB, JobIdParams)
    async def pause_job(params: JobIdParams):
        queue.pause_job(params.job_id)

    @rpc.method(RpcMethod.TRANSFER_RESUME_JOB, JobIdParams)
    async def resume_job(params: JobIdParams):
        queue.resume_job(params.job_id)

    @rpc.method(RpcMethod.TRANSFER_CANCEL_JOB, JobIdParams)
    async def cancel_job(params: JobIdParams):
        queue.cancel_job(params.job_id)

    @rpc.method(RpcMethod.TRANSFER_CLEAR_COMPLETED)
    async def clear_completed(_params):
        queue.clear_completed()

    @rpc.method(RpcMethod.TRANSFER_GET_ALL_JOBS)
    async def get_all_jobs(_params):
        return {
            "jobs": [job.to_dict() for job in queue.get_all_jobs()],
            "summary": queue.get_summary().model_dump(by_alias=True),
        }

    @rpc.method(RpcMethod.TRANSFER_RESOLVE_CONFLICT, ResolveConflictParams)
    async def resolve_conflict(params: ResolveConflictParams):
        queue.resolve_conflict(params.transfer_id, params.action, params.apply_to_all)

    @rpc.method(RpcMethod.TRANSFER_DROP, DropParams)
    async def drop(params: DropParams):
        panes = {name: PaneState(system=pane.system, path=pane.path) for name, pane in params.panes.items()}
        dest_system = resolve_target_system(params.target_pane, panes)
        return await dispatcher.drop(
            host_id=params.host_id,
            source_paths=params.source_paths,
            target_path=params.target_path,
            source_system=params.source_system,
            dest_system=dest_system,
            is_copy=is_copy_modifier(params.modifier),
        )
