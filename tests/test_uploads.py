from __future__ import annotations

import asyncio
import io
import re
from pathlib import Path

import pytest

from lecture_capture.config import AppConfig
from lecture_capture.services.naming import build_frame_name, session_directory_name, slugify
from lecture_capture.services.uploads import FrameStore


def test_build_frame_name_uses_timestamp_and_token() -> None:
    assert build_frame_name(timestamp_ms=1700000000123, token="abc123") == "frame_1700000000123_abc123.jpg"
    assert build_frame_name(timestamp_ms=1, token="t", extension="PNG") == "frame_1_t.png"
    assert re.fullmatch(r"frame_\d+_[0-9a-f]{6}\.jpg", build_frame_name())


def test_session_directory_name_is_safe_and_distinct() -> None:
    assert session_directory_name("3f2a9c") == "3f2a9c"

    traversal = session_directory_name("../../etc")
    assert "/" not in traversal and ".." not in traversal

    first = session_directory_name("Lecture 1")
    second = session_directory_name("lecture-1")
    assert first != second
    assert slugify("  Lecture   1! ") == "lecture-1"


def test_save_stream_persists_bytes_under_session_directory(temp_config: AppConfig) -> None:
    events = []
    store = FrameStore(
        temp_config.uploads_root,
        event_emitter=lambda operation, **kwargs: events.append((operation, kwargs)),
    )

    stored = store.save_stream("session-1", io.BytesIO(b"jpeg-bytes"))

    assert stored.path.read_bytes() == b"jpeg-bytes"
    assert stored.path.parent == temp_config.uploads_root / "session-1"
    assert stored.storage_ref == f"session-1/{stored.display_name}"
    assert stored.display_name.startswith("frame_") and stored.display_name.endswith(".jpg")
    assert stored.size == len(b"jpeg-bytes")
    assert events and events[0][0] == "Stored capture frame"
    assert events[0][1]["payload"]["ref"] == stored.storage_ref


def test_save_upload_runs_in_executor(temp_config: AppConfig) -> None:
    store = FrameStore(temp_config.uploads_root)

    stored = asyncio.run(store.save_upload("s", io.BytesIO(b"png"), extension=".png"))

    assert stored.display_name.endswith(".png")
    assert store.read_bytes(stored.storage_ref) == b"png"


def test_consecutive_frames_get_distinct_files(temp_config: AppConfig) -> None:
    store = FrameStore(temp_config.uploads_root)

    refs = {store.save_stream("s", io.BytesIO(b"x")).storage_ref for _ in range(20)}

    assert len(refs) == 20


def test_resolve_rejects_references_outside_uploads(temp_config: AppConfig, tmp_path: Path) -> None:
    store = FrameStore(temp_config.uploads_root)
    outside = tmp_path / "secret.txt"
    outside.write_text("nope", encoding="utf-8")

    with pytest.raises(ValueError):
        store.resolve("../secret.txt")
    with pytest.raises(ValueError):
        store.resolve(str(outside))


def test_discard_session_removes_directory(temp_config: AppConfig) -> None:
    store = FrameStore(temp_config.uploads_root)
    stored = store.save_stream("s", io.BytesIO(b"x"))

    assert store.discard_session("s") is True
    assert not stored.path.exists()
    assert store.discard_session("s") is False
