import json
from pathlib import Path

import lecture_capture.config as config_module
from lecture_capture.config import (
    DEFAULT_SESSION_TTL_SECONDS,
    AppConfig,
    load_config,
)


def test_uploads_root_falls_back_when_preferred_is_unusable(tmp_path: Path) -> None:
    storage = tmp_path / "storage"
    storage.mkdir()

    preferred_uploads = tmp_path / "uploads"
    preferred_uploads.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {"storage_root": "storage", "uploads_root": "uploads"},
        base_path=tmp_path,
        environ={},
    )

    expected_fallback = (storage / "uploads").resolve()
    assert config.uploads_root == expected_fallback
    assert expected_fallback.is_dir()


def test_storage_root_falls_back_to_home_directory(tmp_path: Path, monkeypatch) -> None:
    home_dir = tmp_path / "home"
    monkeypatch.setattr(config_module.Path, "home", lambda: home_dir)

    (tmp_path / "storage").write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {"storage_root": "storage", "uploads_root": "uploads"},
        base_path=tmp_path,
        environ={},
    )

    expected_storage = (home_dir / ".lecture_capture" / "storage").resolve()
    assert config.storage_root == expected_storage
    assert config.uploads_root == (tmp_path / "uploads").resolve()


def test_session_settings_default_when_missing(tmp_path: Path) -> None:
    config = AppConfig.from_mapping({"storage_root": "storage"}, base_path=tmp_path, environ={})

    assert config.session_ttl_seconds == DEFAULT_SESSION_TTL_SECONDS
    assert config.max_frames_per_session == 0
    assert config.expiry_enabled
    assert config.uploads_root == (tmp_path / "uploads").resolve()


def test_environment_overrides_session_lifetimes(tmp_path: Path) -> None:
    config = AppConfig.from_mapping(
        {"storage_root": "storage", "session_ttl_seconds": 120, "sweep_interval_seconds": 30},
        base_path=tmp_path,
        environ={
            "LECTURE_CAPTURE_SESSION_TTL": "0",
            "LECTURE_CAPTURE_SWEEP_INTERVAL": "not-a-number",
        },
    )

    assert config.session_ttl_seconds == 0
    assert not config.expiry_enabled
    assert config.sweep_interval_seconds == 30


def test_invalid_frame_limit_is_ignored(tmp_path: Path) -> None:
    config = AppConfig.from_mapping(
        {"storage_root": "storage", "max_frames_per_session": "lots"},
        base_path=tmp_path,
        environ={},
    )

    assert config.max_frames_per_session == 0


def test_load_config_reads_json_relative_to_project(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("LECTURE_CAPTURE_SESSION_TTL", raising=False)
    monkeypatch.delenv("LECTURE_CAPTURE_SWEEP_INTERVAL", raising=False)
    config_file = tmp_path / "custom.json"
    storage = tmp_path / "custom-storage"
    uploads = tmp_path / "custom-uploads"
    config_file.write_text(
        json.dumps(
            {
                "storage_root": str(storage),
                "uploads_root": str(uploads),
                "session_ttl_seconds": 90,
                "max_frames_per_session": 500,
            }
        ),
        encoding="utf-8",
    )

    config = load_config(config_file)

    assert config.storage_root == storage.resolve()
    assert config.uploads_root == uploads.resolve()
    assert config.session_ttl_seconds == 90
    assert config.max_frames_per_session == 500
