import asyncio
import os
import time

import pytest

from artifacts import ArtifactStore, sanitize_filename
from errors import ArtifactNotFoundError


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "downloads")


def test_sanitize_filename_strips_reserved_characters():
    assert sanitize_filename('AC/DC: "Back in Black"?') == "ACDC Back in Black"


def test_sanitize_filename_falls_back():
    assert sanitize_filename("ក្រមា") == "download"
    assert sanitize_filename("ក្រមា", fallback="dQw4w9WgXcQ") == "dQw4w9WgXcQ"
    assert sanitize_filename("../..") == "download"


@pytest.mark.parametrize(
    "path",
    ["../../etc/passwd", "/etc/passwd", "..", "", "a/../../outside.mp3", "bad\x00name"],
)
def test_resolve_rejects_paths_outside_root(store, path):
    with pytest.raises(ArtifactNotFoundError):
        store.resolve(path)


def test_resolve_rejects_symlink_escape(store, tmp_path):
    secret = tmp_path / "secret.txt"
    secret.write_text("nope")
    (store.root / "link.mp3").symlink_to(secret)
    with pytest.raises(ArtifactNotFoundError):
        store.resolve("link.mp3")


def test_path_for_is_deterministic(store):
    first = store.path_for("Song Title_audio_best", "mp3")
    second = store.path_for("Song Title_audio_best", "mp3")
    assert first == second
    assert first.parent == store.root
    assert store.relative(first) == "Song Title_audio_best.mp3"


def test_exists_honours_max_age(store):
    path = store.path_for("old_audio_best", "mp3")
    path.write_bytes(b"x")
    assert store.exists(path, max_age=60)
    stale = time.time() - 120
    os.utime(path, (stale, stale))
    assert store.exists(path)
    assert not store.exists(path, max_age=60)


def test_serve_missing_file(store):
    with pytest.raises(ArtifactNotFoundError):
        store.serve("missing.mp3")


def test_discard_removes_partials(store):
    path = store.path_for("clip_video_720", "mp4")
    for name in ("clip_video_720.mp4", "clip_video_720.f137.mp4.part", "clip_video_720.webm"):
        (store.root / name).write_bytes(b"x")
    keep = store.root / "clip_video_1080.mp4"
    keep.write_bytes(b"x")

    store.discard(path)

    assert sorted(p.name for p in store.root.iterdir()) == ["clip_video_1080.mp4"]


def test_schedule_delete_removes_file_later(store):
    path = store.path_for("soon_audio_best", "mp3")
    path.write_bytes(b"x")

    async def scenario():
        store.schedule_delete(path, 0.05)
        assert path.exists()
        await asyncio.sleep(0.2)

    asyncio.run(scenario())
    assert not path.exists()
    assert store.pending_deletions() == 0


def test_rescheduling_replaces_previous_timer(store):
    path = store.path_for("later_audio_best", "mp3")
    path.write_bytes(b"x")

    async def scenario():
        store.schedule_delete(path, 0.05)
        store.schedule_delete(path, 10)
        await asyncio.sleep(0.2)
        assert path.exists()
        assert store.pending_deletions() == 1
        store.cancel_pending()

    asyncio.run(scenario())
    assert path.exists()


def test_delete_failures_are_swallowed(store, tmp_path):
    directory = store.root / "not_a_file.mp3"
    directory.mkdir()
    assert store.delete(directory) is False
