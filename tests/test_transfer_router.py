import asyncio

import pytest

from filebridge.config import Settings
from filebridge.errors import InvalidParamsError
from filebridge.job_runner import TransferQueue
from filebridge.transfer_router import (
    PaneState,
    TransferDispatcher,
    TransferRoute,
    is_copy_modifier,
    resolve_target_system,
    route,
)


class TestRoutingMatrix:
    @pytest.mark.parametrize("source, dest, is_copy, expected", [
        ("local", "local", True, TransferRoute.LOCAL_COPY),
        ("local", "local", False, TransferRoute.LOCAL_MOVE),
        ("remote", "remote", True, TransferRoute.REMOTE_COPY),
        ("remote", "remote", False, TransferRoute.REMOTE_MOVE),
        ("local", "remote", True, TransferRoute.UPLOAD),
        ("local", "remote", False, TransferRoute.UPLOAD),
        ("remote", "local", True, TransferRoute.DOWNLOAD),
        ("remote", "local", False, TransferRoute.DOWNLOAD),
    ])
    def test_matrix(self, source, dest, is_copy, expected):
        assert route(source, dest, is_copy) is expected

    def test_cross_system_never_moves(self):
        for is_copy in (True, False):
            assert route("local", "remote", is_copy).crosses_systems
            assert route("remote", "local", is_copy).crosses_systems

    def test_unknown_system(self):
        with pytest.raises(InvalidParamsError):
            route("local", "cloud", True)

    @pytest.mark.parametrize("modifier, expected", [
        ("ctrl", True), ("alt", True), (None, False), ("shift", False),
    ])
    def test_copy_modifier(self, modifier, expected):
        assert is_copy_modifier(modifier) is expected

    def test_target_system_comes_from_pane(self):
        panes = {"left": PaneState("local", "/home/me"), "right": PaneState("remote", "/home/me")}
        assert resolve_target_system("right", panes) == "remote"
        assert resolve_target_system("left", panes) == "local"
        with pytest.raises(InvalidParamsError):
            resolve_target_system("middle", panes)


@pytest.fixture
def held_queue(adapters):
    # nothing starts, so dropped jobs stay inspectable
    return TransferQueue(adapters, Settings(max_concurrent_transfers=0))


class TestDispatcher:
    def test_local_copy_runs_directly(self, tree, adapters, held_queue):
        (tree / "local" / "target").mkdir()
        dispatcher = TransferDispatcher(adapters, held_queue)

        async def scenario():
            return await dispatcher.drop(None, [str(tree / "local" / "report.txt")],
                                         str(tree / "local" / "target"), "local", "local", True)

        result = asyncio.run(scenario())
        assert result == {"route": "local.copy", "jobIds": []}
        assert (tree / "local" / "target" / "report.txt").exists()
        assert (tree / "local" / "report.txt").exists()
        assert held_queue.get_all_jobs() == []

    def test_local_move(self, tree, adapters, held_queue):
        (tree / "local" / "target").mkdir()
        dispatcher = TransferDispatcher(adapters, held_queue)
        result = asyncio.run(dispatcher.drop(None, [str(tree / "local" / "report.txt")],
                                             str(tree / "local" / "target"), "local", "local", False))
        assert result["route"] == "local.move"
        assert not (tree / "local" / "report.txt").exists()

    def test_remote_copy_needs_host(self, tree, adapters, held_queue):
        dispatcher = TransferDispatcher(adapters, held_queue)
        with pytest.raises(InvalidParamsError):
            asyncio.run(dispatcher.drop(None, [str(tree / "remote" / "data.bin")],
                                        str(tree / "remote"), "remote", "remote", True))

    def test_remote_copy(self, tree, adapters, held_queue):
        (tree / "remote" / "archive").mkdir()
        dispatcher = TransferDispatcher(adapters, held_queue)
        result = asyncio.run(dispatcher.drop("h1", [str(tree / "remote" / "data.bin")],
                                             str(tree / "remote" / "archive"), "remote", "remote", True))
        assert result["route"] == "remote.copy"
        assert (tree / "remote" / "archive" / "data.bin").exists()

    def test_upload_queues_one_job_per_file(self, tree, adapters, held_queue):
        dispatcher = TransferDispatcher(adapters, held_queue)

        async def scenario():
            return await dispatcher.drop("h1", [str(tree / "local" / "report.txt")],
                                         str(tree / "remote"), "local", "remote", False)

        result = asyncio.run(scenario())
        assert result["route"] == "upload"
        [job] = held_queue.get_all_jobs()
        assert result["jobIds"] == [job.id]
        assert job.type == "upload"
        assert job.host_id == "h1"
        assert job.local_path == str(tree / "local" / "report.txt")
        assert job.remote_path == str(tree / "remote").replace("\\", "/") + "/report.txt"
        # source is kept even without a copy modifier
        assert (tree / "local" / "report.txt").exists()

    def test_download_of_directory_is_flattened(self, tree, adapters, held_queue):
        project = tree / "remote" / "project"
        (project / "sub").mkdir(parents=True)
        (project / "a.txt").write_text("a")
        (project / "sub" / "b.txt").write_text("bb")
        dispatcher = TransferDispatcher(adapters, held_queue)

        async def scenario():
            return await dispatcher.drop("h1", [str(project)], str(tree / "local"), "remote", "local", True)

        result = asyncio.run(scenario())
        assert result["route"] == "download"
        assert len(result["jobIds"]) == 2
        assert (tree / "local" / "project" / "sub").is_dir()
        local_paths = sorted(j.local_path.replace("\\", "/") for j in held_queue.get_all_jobs())
        base = str(tree / "local").replace("\\", "/")
        assert local_paths == [f"{base}/project/a.txt", f"{base}/project/sub/b.txt"]
        sizes = sorted(j.size for j in held_queue.get_all_jobs())
        assert sizes == [1, 2]
