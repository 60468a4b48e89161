from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lecture_capture.bootstrap import Bootstrapper
from lecture_capture.config import AppConfig


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "uploads_root": "uploads",
            "session_ttl_seconds": 0,
            "sweep_interval_seconds": 60,
        },
        base_path=tmp_path,
        environ={},
    )

    Bootstrapper(config).initialize()
    return config
