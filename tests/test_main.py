import sys

import pytest
from fastapi.testclient import TestClient

from filebridge.main import create_app


@pytest.fixture
def client(adapters, settings):
    app = create_app(settings=settings, adapters=adapters)
    with TestClient(app) as test_client:
        yield test_client


def call(ws, method, params=None, request_id="r1"):
    """Send one request and read until its response; returns (response, events seen meanwhile)."""
    ws.send_json({"type": "rpc-request", "request": {"id": request_id, "method": method, "params": params}})
    events = []
    while True:
        message = ws.receive_json()
        if message.get("type") == "rpc-response" and message["response"]["id"] == request_id:
            return message["response"], events
        events.append(message)


def wait_for_event(ws, predicate, events=()):
    for message in events:
        if predicate(message):
            return message
    while True:
        message = ws.receive_json()
        if predicate(message):
            return message


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": "1.0.0"}


def test_fs_list_over_websocket(client, tree):
    with client.websocket_connect("/ws") as ws:
        response, _ = call(ws, "fs.list", {"path": str(tree / "local"), "fileSystem": "local", "panelId": "left"})
    result = response["result"]
    assert result["panelId"] == "left"
    assert result["fileSystem"] == "local"
    assert [f["name"] for f in result["files"]] == ["report.txt"]
    assert result["files"][0]["size"] == 1000


def test_remote_requires_host_id(client, tree):
    with client.websocket_connect("/ws") as ws:
        response, _ = call(ws, "fs.stat", {"path": str(tree / "remote" / "data.bin")})
    assert response["error"]["code"] == -32602


def test_unknown_method(client):
    with client.websocket_connect("/ws") as ws:
        response, _ = call(ws, "fs.teleport", {})
    assert response["error"] == {"code": -32601, "message": "Method not found: fs.teleport"}


def test_missing_file_maps_to_not_found(client, tree):
    with client.websocket_connect("/ws") as ws:
        response, _ = call(ws, "fs.checksum", {
            "path": str(tree / "local" / "ghost.txt"), "fileSystem": "local", "algorithm": "md5",
        })
    assert response["error"]["code"] == -32005


def test_checksum_and_bulk_rename(client, tree):
    (tree / "local" / "empty.txt").write_bytes(b"")
    with client.websocket_connect("/ws") as ws:
        response, _ = call(ws, "fs.checksum", {
            "path": str(tree / "local" / "empty.txt"), "fileSystem": "local", "algorithm": "sha256",
        })
        assert response["result"] == {
            "checksum": "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855",
            "algorithm": "sha256",
            "filename": "empty.txt",
        }
        response, _ = call(ws, "fs.bulkRename", {
            "fileSystem": "local",
            "operations": [
                {"oldPath": str(tree / "local" / "empty.txt"), "newPath": str(tree / "local" / "one.txt")},
                {"oldPath": str(tree / "local" / "report.txt"), "newPath": str(tree / "local" / "two.txt")},
            ],
        }, request_id="r2")
        assert response == {"id": "r2", "result": None}
    assert sorted(p.name for p in (tree / "local").iterdir()) == ["one.txt", "two.txt"]


def test_upload_job_reports_progress_and_completion(client, tree):
    with client.websocket_connect("/ws") as ws:
        response, events = call(ws, "transfer.addJob", {"job": {
            "type": "upload",
            "hostId": "h1",
            "localPath": str(tree / "local" / "report.txt"),
            "remotePath": str(tree / "remote" / "report.txt"),
        }})
        assert response == {"id": "r1", "result": None}
        wait_for_event(
            ws,
            lambda m: m.get("type") == "transfer.update" and m["data"]["job"]["status"] == "completed",
            events,
        )
        response, _ = call(ws, "transfer.getAllJobs", request_id="r2")
    [job] = response["result"]["jobs"]
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert response["result"]["summary"]["activeCount"] == 0
    assert (tree / "remote" / "report.txt").read_bytes() == b"L" * 1000


def test_drop_with_conflict_and_resolution(client, tree):
    (tree / "remote" / "report.txt").write_bytes(b"old")
    panes = {"left": {"system": "local", "path": str(tree / "local")},
             "right": {"system": "remote", "path": str(tree / "remote")}}
    with client.websocket_connect("/ws") as ws:
        response, events = call(ws, "transfer.drop", {
            "hostId": "h1",
            "sourcePaths": [str(tree / "local" / "report.txt")],
            "targetPath": str(tree / "remote"),
            "sourceSystem": "local",
            "targetPane": "right",
            "panes": panes,
        })
        assert response["result"]["route"] == "upload"
        [job_id] = response["result"]["jobIds"]
        conflict = wait_for_event(ws, lambda m: m.get("type") == "transfer.conflict", events)
        assert conflict["data"]["transferId"] == job_id

        response, events = call(ws, "transfer.resolveConflict",
                                {"transferId": job_id, "action": "rename"}, request_id="r2")
        assert "error" not in response
        wait_for_event(
            ws,
            lambda m: m.get("type") == "transfer.update" and m["data"]["job"]["status"] == "completed",
            events,
        )
        response, _ = call(ws, "transfer.clearCompleted", request_id="r3")
        response, _ = call(ws, "transfer.getAllJobs", request_id="r4")
    assert response["result"]["jobs"] == []
    assert (tree / "remote" / "report.txt").read_bytes() == b"old"
    assert (tree / "remote" / "report (1).txt").read_bytes() == b"L" * 1000


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
def test_recursive_chmod_streams_progress(client, tree):
    (tree / "local" / "sub").mkdir()
    (tree / "local" / "sub" / "x.txt").write_text("x")
    with client.websocket_connect("/ws") as ws:
        response, events = call(ws, "fs.chmod", {
            "path": str(tree / "local"), "fileSystem": "local", "octal": "750", "recursive": True,
        })
        assert response["result"] is None
        final = wait_for_event(
            ws,
            lambda m: m.get("type") == "fs.chmodProgress" and m["data"]["current"] == m["data"]["total"],
            events,
        )
    assert final["data"]["total"] == 4
    assert (tree / "local" / "sub" / "x.txt").stat().st_mode & 0o777 == 0o750


def test_malformed_message_gets_parse_error(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("{{{")
        message = ws.receive_json()
    assert message["type"] == "rpc-response"
    assert message["response"]["error"]["code"] == -32700
