"""Configuration loading utilities for the Lecture Capture service."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".lecture_capture_write_check"

DEFAULT_SESSION_TTL_SECONDS = 4 * 60 * 60.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0

TTL_ENV_VAR = "LECTURE_CAPTURE_SESSION_TTL"
SWEEP_ENV_VAR = "LECTURE_CAPTURE_SWEEP_INTERVAL"


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins and the flag reports whether a fallback
    was used. When nothing can be prepared the original ``preferred`` path is
    returned so that bootstrap can report the problem.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _coerce_seconds(value: Any, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return default
    try:
        return float(value)
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring invalid duration %r; using %s seconds.", value, default)
        return default


def _coerce_count(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring invalid count %r; using %s.", value, default)
        return default


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and session lifecycle settings."""

    storage_root: Path
    uploads_root: Path
    session_ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    max_frames_per_session: int = 0

    @property
    def expiry_enabled(self) -> bool:
        return self.session_ttl_seconds > 0

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, Any],
        *,
        base_path: Path,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "AppConfig":
        env = os.environ if environ is None else environ

        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".lecture_capture" / "storage"
        storage_root, _ = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        uploads_setting = mapping.get("uploads_root") or "uploads"
        preferred_uploads = (base_path / uploads_setting).resolve()
        uploads_root, _ = _select_writable_directory(
            preferred_uploads,
            label="uploads",
            fallbacks=(storage_root / "uploads",),
        )

        ttl = _coerce_seconds(mapping.get("session_ttl_seconds"), DEFAULT_SESSION_TTL_SECONDS)
        ttl = _coerce_seconds(env.get(TTL_ENV_VAR), ttl)
        sweep = _coerce_seconds(
            mapping.get("sweep_interval_seconds"), DEFAULT_SWEEP_INTERVAL_SECONDS
        )
        sweep = _coerce_seconds(env.get(SWEEP_ENV_VAR), sweep)

        return cls(
            storage_root=storage_root,
            uploads_root=uploads_root,
            session_ttl_seconds=ttl,
            sweep_interval_seconds=sweep,
            max_frames_per_session=_coerce_count(mapping.get("max_frames_per_session"), 0),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config: Dict[str, Any] = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "load_config"]
