"""Disk persistence for frames uploaded during a live capture."""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import functools
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Optional

from .events import emit_file_event
from .naming import build_frame_name, session_directory_name


LOGGER = logging.getLogger(__name__)

_DEFAULT_CHUNK_SIZE = 1024 * 1024

FileEventEmitter = Callable[..., None]


@dataclass(frozen=True)
class StoredFrame:
    """Location of a persisted frame."""

    storage_ref: str
    display_name: str
    path: Path
    size: int


def _copy_stream(source: BinaryIO, target: Path, *, chunk_size: int) -> int:
    if hasattr(source, "seek"):
        with contextlib.suppress(OSError, ValueError):
            source.seek(0)
    with target.open("wb") as buffer:
        shutil.copyfileobj(source, buffer, length=chunk_size)
    return target.stat().st_size


class FrameStore:
    """Persist frame bytes under ``uploads_root`` and resolve stored references.

    References handed to the session registry are POSIX paths relative to the
    uploads root, e.g. ``<session>/frame_1700000000000_a1b2c3.jpg``.
    """

    def __init__(
        self,
        uploads_root: Path,
        *,
        chunk_size: int = _DEFAULT_CHUNK_SIZE,
        event_emitter: Optional[FileEventEmitter] = None,
    ) -> None:
        self._root = uploads_root.resolve()
        self._chunk_size = chunk_size
        self._emit: FileEventEmitter = event_emitter or emit_file_event

    @property
    def root(self) -> Path:
        return self._root

    def configure_event_emitter(self, emitter: Optional[FileEventEmitter]) -> None:
        self._emit = emitter or emit_file_event

    def session_dir(self, session_id: str) -> Path:
        return self._root / session_directory_name(session_id)

    def _prepare_target(self, session_id: str, extension: str) -> Path:
        directory = self.session_dir(session_id)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / build_frame_name(extension=extension)
        while target.exists():
            target = directory / build_frame_name(extension=extension)
        return target

    def _stored(self, target: Path, size: int, started: float) -> StoredFrame:
        storage_ref = target.relative_to(self._root).as_posix()
        self._emit(
            "Stored capture frame",
            payload={"ref": storage_ref, "bytes": size},
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return StoredFrame(
            storage_ref=storage_ref,
            display_name=target.name,
            path=target,
            size=size,
        )

    def save_stream(
        self,
        session_id: str,
        source: BinaryIO,
        *,
        extension: str = ".jpg",
    ) -> StoredFrame:
        """Synchronously copy *source* into a new frame file."""

        started = time.perf_counter()
        target = self._prepare_target(session_id, extension)
        size = _copy_stream(source, target, chunk_size=self._chunk_size)
        return self._stored(target, size, started)

    async def save_upload(
        self,
        session_id: str,
        source: BinaryIO,
        *,
        extension: str = ".jpg",
    ) -> StoredFrame:
        """Persist *source* without blocking the event loop."""

        loop = asyncio.get_running_loop()
        operation = functools.partial(
            self.save_stream, session_id, source, extension=extension
        )
        return await loop.run_in_executor(None, contextvars.copy_context().run, operation)

    def resolve(self, storage_ref: str) -> Path:
        """Return the path for *storage_ref*; ``ValueError`` if it escapes the root."""

        candidate = Path(storage_ref)
        if candidate.is_absolute():
            candidate = candidate.resolve()
        else:
            candidate = (self._root / candidate).resolve()
        candidate.relative_to(self._root)
        return candidate

    def read_bytes(self, storage_ref: str) -> bytes:
        return self.resolve(storage_ref).read_bytes()

    def discard_session(self, session_id: str) -> bool:
        """Delete every frame stored for *session_id*."""

        directory = self.session_dir(session_id)
        if not directory.exists():
            return False
        started = time.perf_counter()
        counts: Dict[str, int] = {"files": sum(1 for item in directory.iterdir() if item.is_file())}
        try:
            shutil.rmtree(directory)
        except OSError as error:
            LOGGER.warning("Could not remove frames for session %s: %s", session_id, error)
            return False
        self._emit(
            "Discarded capture frames",
            payload={"session_id": session_id, **counts},
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return True


__all__ = ["FrameStore", "StoredFrame"]
