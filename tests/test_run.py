"""Tests for the run.py entrypoint helpers."""

from __future__ import annotations

import sys
import types
from types import SimpleNamespace

import pytest
import typer
from typer.testing import CliRunner

import run
from lecture_capture.ui.sessions import SessionRow


class ModuleGenerator:
    def generate(self, request) -> str:
        return "notes"


module_generator_instance = ModuleGenerator()


@pytest.fixture(autouse=True)
def generator_module(monkeypatch):
    module = types.ModuleType("capture_test_generators")
    module.ModuleGenerator = ModuleGenerator
    module.instance = module_generator_instance
    monkeypatch.setitem(sys.modules, "capture_test_generators", module)
    return module


def _setup_serve(monkeypatch, tmp_path, upload_limit, generator=None):
    captured = {}

    monkeypatch.setattr(
        run,
        "initialize_app",
        lambda: SimpleNamespace(
            storage_root=tmp_path,
            uploads_root=tmp_path / "uploads",
            session_ttl_seconds=30.0,
            max_frames_per_session=5,
        ),
    )
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)

    dummy_app = SimpleNamespace(state=SimpleNamespace())

    def fake_create_app(registry, *, config, frame_store, generator, root_path):
        captured["registry"] = registry
        captured["generator"] = generator
        captured["root_path"] = root_path
        return dummy_app

    monkeypatch.setattr(run, "create_app", fake_create_app)

    class DummyConfig:
        def __init__(self, app, limit_max_request_size=None, **kwargs):
            captured["app"] = app
            if limit_max_request_size is not None:
                kwargs["limit_max_request_size"] = limit_max_request_size
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["server_config"] = config
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)
    monkeypatch.setattr(run, "get_max_upload_bytes", lambda: upload_limit)

    run.serve(host="0.0.0.0", port=9000, root_path="api/", generator=generator)

    captured["app_state_server"] = dummy_app.state.server
    return captured


def test_serve_builds_registry_from_config(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=0)

    registry = captured["registry"]
    assert registry.ttl_seconds == 30.0
    assert registry.max_frames == 5
    assert captured["root_path"] == "/api"
    assert captured["generator"] is None
    assert captured["server_run"] is True
    assert captured["app_state_server"] is captured["server_instance"]
    assert "limit_max_request_size" not in captured["config_kwargs"]


def test_serve_applies_request_size_limit_when_supported(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=8 * 1024 * 1024)

    assert captured["config_kwargs"]["limit_max_request_size"] == 8 * 1024 * 1024


def test_serve_loads_generator_from_import_path(monkeypatch, tmp_path):
    captured = _setup_serve(
        monkeypatch,
        tmp_path,
        upload_limit=0,
        generator="capture_test_generators:instance",
    )

    assert captured["generator"] is module_generator_instance


def test_load_generator_instantiates_classes():
    generator = run._load_generator("capture_test_generators:ModuleGenerator")

    assert isinstance(generator, ModuleGenerator)


@pytest.mark.parametrize(
    "target",
    ["no-colon", "capture_test_generators:missing_attribute", "json:dumps"],
)
def test_load_generator_rejects_bad_targets(target):
    with pytest.raises(typer.BadParameter):
        run._load_generator(target)


def test_sessions_command_renders_rows(monkeypatch):
    rows = [SessionRow("abc123", None, 4, 2, 7.5)]
    monkeypatch.setattr(run, "fetch_sessions", lambda url: rows)

    result = CliRunner().invoke(run.cli, ["sessions", "--url", "http://capture.local"])

    assert result.exit_code == 0
    assert "abc123" in result.output


def test_sessions_command_reports_unreachable_server(monkeypatch):
    def fail(url):
        raise run.httpx.ConnectError("connection refused")

    monkeypatch.setattr(run, "fetch_sessions", fail)

    result = CliRunner().invoke(run.cli, ["sessions", "--url", "http://capture.local"])

    assert result.exit_code == 1
    assert "Could not reach http://capture.local" in result.output
