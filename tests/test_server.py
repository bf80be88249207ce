"""HTTP tests for /merge and /health with the ffmpeg double wired in."""

import json

import pytest
from fastapi.testclient import TestClient

import server
from conftest import FakeEngine
from mp4merge_backend.workspace import WorkspaceManager


@pytest.fixture
def app_state(tmp_root):
    state = server.app.state
    saved = (state.engine, state.workspaces, state.engine_available)
    state.engine = FakeEngine()
    state.workspaces = WorkspaceManager(root=tmp_root, grace_seconds=0.01)
    state.engine_available = True
    yield state
    state.engine, state.workspaces, state.engine_available = saved


@pytest.fixture
def client(app_state):
    return TestClient(server.app)


def _files(*uploads):
    return [("videos", (name, data, ctype)) for name, data, ctype in uploads]


def _post(client, uploads, order):
    data = {} if order is None else {"order": order if isinstance(order, str) else json.dumps(order)}
    return client.post("/merge", files=_files(*uploads), data=data)


def test_health_reports_engine_gate(client, app_state):
    assert client.get("/health").json() == {"status": "ok", "ffmpeg": True}

    app_state.engine_available = False
    assert client.get("/health").json() == {"status": "ok", "ffmpeg": False}


def test_merge_streams_in_requested_order(client, app_state, tmp_root):
    res = _post(
        client,
        [("a.mp4", b"AAA", "video/mp4"), ("b.mp4", b"BBB", "video/mp4"), ("c.mov", b"CCC", "video/quicktime")],
        ["c.mov", "a.mp4", "b.mp4"],
    )

    assert res.status_code == 200
    assert res.headers["content-type"] == "video/mp4"
    assert res.headers["content-disposition"] == 'attachment; filename="merged.mp4"'
    assert res.content == b"<NORM>CCC<NORM>AAA<NORM>BBB"
    assert res.headers["content-length"] == str(len(res.content))
    assert len(app_state.engine.transcodes) == 3
    assert len(app_state.engine.concats) == 1
    assert list(tmp_root.iterdir()) == []


def test_engine_unavailable_returns_503_with_instructions(client, app_state, tmp_root):
    app_state.engine_available = False

    res = _post(client, [("a.mp4", b"A", "video/mp4"), ("b.mp4", b"B", "video/mp4")], ["a.mp4", "b.mp4"])

    assert res.status_code == 503
    body = res.json()
    assert body["error"] == "FFmpeg is not installed or not found in PATH."
    assert any("brew install ffmpeg" in line for line in body["instructions"])
    assert list(tmp_root.iterdir()) == []


@pytest.mark.parametrize(
    "uploads,order,message",
    [
        ([("a.mp4", b"A", "video/mp4")], ["a.mp4"], "Upload at least 2 video files."),
        ([], [], "Upload at least 2 video files."),
        (
            [("a.mp4", b"A", "video/mp4"), ("b.txt", b"B", "text/plain")],
            ["a.mp4", "b.txt"],
            'Rejected "b.txt": MIME type "text/plain" is not a supported video format.',
        ),
        ([("a.mp4", b"A", "video/mp4"), ("b.mp4", b"B", "video/mp4")], "not-json", "Invalid order parameter."),
        ([("a.mp4", b"A", "video/mp4"), ("b.mp4", b"B", "video/mp4")], None, "Invalid order parameter."),
        (
            [("a.mp4", b"A", "video/mp4"), ("b.mp4", b"B", "video/mp4")],
            ["a.mp4", "x.mp4"],
            "Order contains filenames that were not uploaded.",
        ),
    ],
)
def test_validation_errors_are_400_without_workspace(client, app_state, tmp_root, uploads, order, message):
    res = _post(client, uploads, order)

    assert res.status_code == 400
    assert res.json() == {"error": message, "instructions": None}
    assert app_state.engine.calls == []
    assert list(tmp_root.iterdir()) == []


def test_too_many_files(client, tmp_root):
    uploads = [(f"{i}.mp4", b"x", "video/mp4") for i in range(21)]

    res = _post(client, uploads, [s[0] for s in uploads])

    assert res.status_code == 400
    assert res.json()["error"] == "Too many files. Max is 20."
    assert list(tmp_root.iterdir()) == []


def test_transcode_failure_is_500_and_cleans_up(client, app_state, tmp_root):
    app_state.engine = FakeEngine(fail_transcode_at=1)

    res = _post(
        client,
        [("a.mp4", b"A", "video/mp4"), ("b.mp4", b"B", "video/mp4"), ("c.mp4", b"C", "video/mp4")],
        ["a.mp4", "b.mp4", "c.mp4"],
    )

    assert res.status_code == 500
    assert res.json() == {"error": 'Failed to normalize "b.mp4".', "instructions": None}
    assert len(app_state.engine.transcodes) == 2
    assert app_state.engine.concats == []
    assert list(tmp_root.iterdir()) == []


def test_concat_failure_is_500_and_cleans_up(client, app_state, tmp_root):
    app_state.engine = FakeEngine(fail_concat=True)

    res = _post(client, [("a.mp4", b"A", "video/mp4"), ("b.mp4", b"B", "video/mp4")], ["a.mp4", "b.mp4"])

    assert res.status_code == 500
    assert res.json()["error"] == "FFmpeg failed to concatenate videos."
    assert list(tmp_root.iterdir()) == []


def test_frontend_is_served(client):
    res = client.get("/")

    assert res.status_code == 200
    assert "/merge" in res.text
