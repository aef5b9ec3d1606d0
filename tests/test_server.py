import asyncio
import json
import logging
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

import server
from fakes import SLOW_SCRIPT, SUCCESS_SCRIPT, UNAVAILABLE_SCRIPT, python_command
from jobs import Job, JobState, Variant

VIDEO_ID = "dQw4w9WgXcQ"
OTHER_ID = "9bZkp7q19f0"

INFO = {
    "title": "Never Gonna Give You Up",
    "duration": 213,
    "thumbnail": "https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg",
}


client = TestClient(server.app)


def fake_extractor(url, options):
    return INFO


@pytest.fixture
def make_client(settings):
    clients = []

    def factory(script=SUCCESS_SCRIPT):
        app = server.create_app(settings, command_builder=python_command(script), extractor=fake_extractor)
        test_client = TestClient(app)
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    yield factory
    for test_client in clients:
        test_client.__exit__(None, None, None)


def test_root_ok():
    resp = client.get("/")
    assert resp.status_code == 200
    data = resp.json()
    assert data.get("status") == "ok"


def test_health_includes_versions():
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data.get("status") == "ok"
    assert "yt_dlp" in data
    assert "ffmpeg" in data
    assert "max_concurrent_downloads" in data
    assert data["active_downloads"] == 0


def test_get_info(make_client):
    resp = make_client().get("/get-info", params={"id": VIDEO_ID})
    assert resp.status_code == 200
    assert resp.json() == {"title": INFO["title"], "duration": "3:33", "thumbnail": INFO["thumbnail"]}


@pytest.mark.parametrize("params", [{}, {"id": "nope"}, {"id": "dQw4w9WgXcQ;rm"}])
def test_invalid_id_is_400(make_client, params):
    resp = make_client().get("/get-info", params=params)
    assert resp.status_code == 400
    assert "error" in resp.json()


def test_invalid_quality_is_400(make_client):
    resp = make_client().get("/download-audio", params={"id": VIDEO_ID, "quality": "720"})
    assert resp.status_code == 400
    assert "quality" in resp.json()["error"]


def test_download_audio_streams_file(make_client):
    test_client = make_client()
    resp = test_client.get("/download-audio", params={"id": VIDEO_ID})
    assert resp.status_code == 200
    assert resp.content == b"media-bytes"
    assert resp.headers["content-type"] == "audio/mpeg"
    disposition = resp.headers["content-disposition"]
    assert disposition.startswith("attachment")
    assert "Never" in disposition
    assert ".mp3" in disposition
    assert test_client.app.state.admission.active_count == 0


def test_download_video_failure_is_json_error(make_client):
    test_client = make_client(UNAVAILABLE_SCRIPT)
    resp = test_client.get("/download-video", params={"id": VIDEO_ID, "quality": "720"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Video unavailable"}
    assert test_client.app.state.admission.active_count == 0


def test_server_busy_is_429(make_client):
    test_client = make_client(SLOW_SCRIPT)
    admission = test_client.app.state.admission
    while admission.try_admit():
        pass
    resp = test_client.get("/download-audio", params={"id": OTHER_ID})
    assert resp.status_code == 429
    assert resp.json() == {"error": "Server busy"}
    assert test_client.app.state.manager.active_jobs() == []


def test_progress_stream_then_file(make_client):
    test_client = make_client()
    resp = test_client.get(
        "/download-progress",
        params={"id": VIDEO_ID, "title": "My Song", "format": "audio", "quality": "192"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    payloads = [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]
    progress = [p["progress"] for p in payloads if "progress" in p]
    assert progress == sorted(progress)
    assert payloads[-1] == {"url": "/download-file?path=My%20Song_audio_192.mp3"}

    file_resp = test_client.get(payloads[-1]["url"])
    assert file_resp.status_code == 200
    assert file_resp.content == b"media-bytes"


def test_progress_stream_reports_errors(make_client):
    resp = make_client(UNAVAILABLE_SCRIPT).get("/download-progress", params={"id": VIDEO_ID, "format": "video"})
    assert resp.status_code == 200
    assert 'data: {"error": "Video unavailable"}' in resp.text


@pytest.mark.parametrize("path", ["../../etc/passwd", "/etc/passwd", "missing.mp3", ""])
def test_download_file_rejects_bad_paths(make_client, path):
    resp = make_client().get("/download-file", params={"path": path})
    assert resp.status_code == 404
    assert resp.json() == {"error": "File not found"}


def test_download_file_refuses_running_job_files(make_client):
    test_client = make_client()
    manager = test_client.app.state.manager
    output_path = manager.output_path_for(VIDEO_ID, Variant("audio"), title="Still Going")
    partial = output_path.with_name(output_path.name + ".part")
    output_path.write_bytes(b"half")
    partial.write_bytes(b"half")
    job = Job(media_ref=VIDEO_ID, variant=Variant("audio"), output_path=output_path, state=JobState.RUNNING)
    manager._inflight[output_path] = job
    try:
        for name in (output_path.name, partial.name):
            resp = test_client.get("/download-file", params={"path": name})
            assert resp.status_code == 404
            assert resp.json() == {"error": "File not found"}
    finally:
        del manager._inflight[output_path]

    resp = test_client.get("/download-file", params={"path": output_path.name})
    assert resp.status_code == 200
    assert resp.content == b"half"


def test_download_file_refuses_non_media_files(make_client):
    test_client = make_client()
    (test_client.app.state.store.root / "notes.txt").write_text("secret")
    resp = test_client.get("/download-file", params={"path": "notes.txt"})
    assert resp.status_code == 404


class FakeReceive:
    def __init__(self, messages):
        self.messages = list(messages)

    async def receive(self):
        await asyncio.sleep(0)
        return self.messages.pop(0)


def test_wait_for_disconnect_skips_body_messages():
    request = FakeReceive(
        [
            {"type": "http.request", "body": b"", "more_body": False},
            {"type": "http.disconnect"},
        ]
    )
    asyncio.run(asyncio.wait_for(server._wait_for_disconnect(request), timeout=2))
    assert request.messages == []


def test_unwritable_log_file_is_logged(settings, tmp_path, caplog):
    broken = replace(settings, log_file=str(tmp_path / "missing" / "kroma.log"))
    with caplog.at_level(logging.WARNING, logger="kroma"):
        server.configure_logging(broken)
    assert any("Could not open log file" in record.getMessage() for record in caplog.records)
