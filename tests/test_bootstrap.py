from pathlib import Path

import pytest

import lecture_capture.config as config_module
from lecture_capture.bootstrap import BootstrapError, Bootstrapper
from lecture_capture.config import AppConfig


def test_bootstrapper_creates_runtime_directories(tmp_path: Path) -> None:
    config = AppConfig(
        storage_root=tmp_path / "storage",
        uploads_root=tmp_path / "storage" / "uploads",
    )

    Bootstrapper(config).initialize()

    assert config.storage_root.is_dir()
    assert config.uploads_root.is_dir()


def test_bootstrapper_raises_when_uploads_directory_unwritable(
    tmp_path: Path, monkeypatch
) -> None:
    storage_root = tmp_path / "storage"
    uploads_root = tmp_path / "uploads"

    config = AppConfig(storage_root=storage_root, uploads_root=uploads_root)

    original_ensure = config_module._ensure_writable_directory

    def fake_ensure(path: Path) -> bool:
        if path.resolve() == uploads_root.resolve():
            return False
        return original_ensure(path)

    monkeypatch.setattr(config_module, "_ensure_writable_directory", fake_ensure)

    with pytest.raises(BootstrapError) as excinfo:
        Bootstrapper(config).initialize()

    assert "uploads" in str(excinfo.value).lower()
