"""In-process registry of live capture sessions.

A capture session accumulates frame references and transcript fragments that
are uploaded while a lecture is being recorded. The registry owns every
session; callers only ever receive immutable snapshots.

Locking discipline:

* the identifier map is split into shards, each guarded by its own lock that
  is only held for dictionary operations;
* every session entry carries its own lock, held while a record is appended
  or a snapshot is copied;
* an entry lock may be held while a shard lock is taken, never the reverse;
* an entry leaves the map only while its lock is held, and is then marked
  evicted.

An appender that acquires the entry lock re-validates that the entry is still
the live one for its identifier, so an append racing with eviction or expiry
either lands before the removal or retries and creates a fresh session. Once
an appender has validated, no eviction can detach the entry until it is done.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Tuple


LOGGER = logging.getLogger(__name__)

DEFAULT_SHARD_COUNT = 16


class SessionError(RuntimeError):
    """Base class for capture session registry errors."""


class SessionNotFoundError(SessionError, KeyError):
    """Raised when no live session exists for an identifier."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Capture session '{session_id}' not found")
        self.session_id = session_id

    def __str__(self) -> str:
        return str(self.args[0])


class SessionAlreadyExistsError(SessionError):
    """Raised when ``create`` targets an identifier that is already live."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Capture session '{session_id}' already exists")
        self.session_id = session_id


class SessionCapacityError(SessionError):
    """Raised when a session has reached its configured frame limit."""

    def __init__(self, session_id: str, limit: int) -> None:
        super().__init__(f"Capture session '{session_id}' already holds {limit} frames")
        self.session_id = session_id
        self.limit = limit


@dataclass(frozen=True)
class FrameRecord:
    """Reference to one captured still image."""

    storage_ref: str
    display_name: str
    offset_ms: int


@dataclass(frozen=True)
class TranscriptFragment:
    """One piece of speech-to-text output."""

    text: str
    offset_ms: int


@dataclass(frozen=True)
class CaptureSession:
    """Read-only snapshot of a capture session."""

    id: str
    created_at: datetime
    updated_at: datetime
    frames: Tuple[FrameRecord, ...] = ()
    transcripts: Tuple[TranscriptFragment, ...] = ()

    @property
    def frame_count(self) -> int:
        return len(self.frames)

    @property
    def transcript_count(self) -> int:
        return len(self.transcripts)


@dataclass(frozen=True)
class SessionSummary:
    """Counts-only view used by status listings."""

    id: str
    created_at: datetime
    updated_at: datetime
    frame_count: int
    transcript_count: int
    idle_seconds: float


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _SessionEntry:
    __slots__ = (
        "session_id",
        "created_at",
        "updated_at",
        "last_touch",
        "frames",
        "transcripts",
        "lock",
        "evicted",
    )

    def __init__(self, session_id: str, created_at: datetime, touched: float) -> None:
        self.session_id = session_id
        self.created_at = created_at
        self.updated_at = created_at
        self.last_touch = touched
        self.frames: List[FrameRecord] = []
        self.transcripts: List[TranscriptFragment] = []
        self.lock = threading.Lock()
        self.evicted = False

    def snapshot(self) -> CaptureSession:
        return CaptureSession(
            id=self.session_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            frames=tuple(self.frames),
            transcripts=tuple(self.transcripts),
        )


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: Dict[str, _SessionEntry] = {}


class SessionRegistry:
    """Process-wide keyed store of capture sessions.

    ``ttl_seconds`` enables idle expiry when positive: a session that has not
    been created or appended to for longer than the threshold is treated as
    absent and removed on the next access or :meth:`sweep`. ``max_frames``
    bounds the number of frames per session when positive.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 0.0,
        max_frames: int = 0,
        shard_count: int = DEFAULT_SHARD_COUNT,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self._ttl = float(ttl_seconds)
        self._max_frames = int(max_frames)
        self._clock = clock
        self._now = now
        self._shards: Tuple[_Shard, ...] = tuple(_Shard() for _ in range(shard_count))

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def max_frames(self) -> int:
        return self._max_frames

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _shard(self, session_id: str) -> _Shard:
        return self._shards[hash(session_id) % len(self._shards)]

    def _is_expired(self, entry: _SessionEntry, at: float) -> bool:
        return self._ttl > 0 and (at - entry.last_touch) > self._ttl

    @staticmethod
    def _detach_locked(shard: _Shard, entry: _SessionEntry) -> None:
        """Remove *entry* from *shard*; the caller holds both locks."""

        if shard.entries.get(entry.session_id) is entry:
            del shard.entries[entry.session_id]
        entry.evicted = True

    def _live_entry_locked(self, shard: _Shard, session_id: str) -> Optional[_SessionEntry]:
        """Return the live entry for *session_id*; the caller holds ``shard.lock``.

        An expired entry is detached only when its lock is free. An expired
        entry whose lock is busy is returned as is; whoever acquires its lock
        re-checks the expiry before touching it.
        """

        entry = shard.entries.get(session_id)
        if entry is None:
            return None
        if not self._is_expired(entry, self._clock()):
            return entry
        if not entry.lock.acquire(blocking=False):
            return entry
        try:
            self._detach_locked(shard, entry)
        finally:
            entry.lock.release()
        return None

    def _new_entry(self, session_id: str) -> _SessionEntry:
        return _SessionEntry(session_id, self._now(), self._clock())

    @contextlib.contextmanager
    def _locked_entry(self, session_id: str, *, create: bool) -> Iterator[_SessionEntry]:
        """Yield the live entry for *session_id* with its lock held."""

        shard = self._shard(session_id)
        while True:
            with shard.lock:
                entry = self._live_entry_locked(shard, session_id)
                if entry is None:
                    if not create:
                        raise SessionNotFoundError(session_id)
                    entry = self._new_entry(session_id)
                    shard.entries[session_id] = entry

            entry.lock.acquire()
            with shard.lock:
                still_live = not entry.evicted and shard.entries.get(session_id) is entry
                if still_live and self._is_expired(entry, self._clock()):
                    self._detach_locked(shard, entry)
                    still_live = False
            if still_live:
                break
            entry.lock.release()

        try:
            yield entry
        finally:
            entry.lock.release()

    def _touch(self, entry: _SessionEntry) -> None:
        entry.last_touch = self._clock()
        entry.updated_at = self._now()

    def _live_entries(self) -> List[_SessionEntry]:
        entries: List[_SessionEntry] = []
        for shard in self._shards:
            with shard.lock:
                for session_id in list(shard.entries):
                    entry = self._live_entry_locked(shard, session_id)
                    if entry is not None:
                        entries.append(entry)
        return entries

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def create(self, session_id: str) -> CaptureSession:
        """Register an empty session, rejecting identifiers that are already live."""

        shard = self._shard(session_id)
        with shard.lock:
            if self._live_entry_locked(shard, session_id) is not None:
                raise SessionAlreadyExistsError(session_id)
            entry = self._new_entry(session_id)
            snapshot = entry.snapshot()
            shard.entries[session_id] = entry
        return snapshot

    def exists(self, session_id: str) -> bool:
        shard = self._shard(session_id)
        with shard.lock:
            return self._live_entry_locked(shard, session_id) is not None

    def get(self, session_id: str) -> CaptureSession:
        """Return a consistent snapshot or raise :class:`SessionNotFoundError`."""

        with self._locked_entry(session_id, create=False) as entry:
            return entry.snapshot()

    def append_frame(
        self,
        session_id: str,
        storage_ref: str,
        display_name: str,
        offset_ms: int,
    ) -> int:
        """Append a frame reference, creating the session if needed.

        Returns the number of frames stored for the session afterwards.
        """

        record = FrameRecord(
            storage_ref=storage_ref,
            display_name=display_name,
            offset_ms=int(offset_ms),
        )
        with self._locked_entry(session_id, create=True) as entry:
            if self._max_frames > 0 and len(entry.frames) >= self._max_frames:
                raise SessionCapacityError(session_id, self._max_frames)
            entry.frames.append(record)
            self._touch(entry)
            return len(entry.frames)

    def append_transcript(self, session_id: str, text: str, offset_ms: int) -> int:
        """Append a transcript fragment, creating the session if needed.

        Returns the number of fragments stored for the session afterwards.
        """

        record = TranscriptFragment(text=text, offset_ms=int(offset_ms))
        with self._locked_entry(session_id, create=True) as entry:
            entry.transcripts.append(record)
            self._touch(entry)
            return len(entry.transcripts)

    def evict(self, session_id: str) -> bool:
        """Remove *session_id*; returns whether a live session was removed.

        Waits for an in-flight append on the same session to finish first.
        """

        shard = self._shard(session_id)
        try:
            with self._locked_entry(session_id, create=False) as entry:
                with shard.lock:
                    self._detach_locked(shard, entry)
                return True
        except SessionNotFoundError:
            return False

    def evict_if_unchanged(self, session_id: str, frame_count: int, transcript_count: int) -> bool:
        """Remove *session_id* only if it still holds exactly the given counts.

        Used after a snapshot has been consumed: a session that received
        records since the snapshot was taken stays live so nothing accepted
        is lost.
        """

        shard = self._shard(session_id)
        try:
            with self._locked_entry(session_id, create=False) as entry:
                if len(entry.frames) != frame_count or len(entry.transcripts) != transcript_count:
                    return False
                with shard.lock:
                    self._detach_locked(shard, entry)
                return True
        except SessionNotFoundError:
            return False

    def sweep(self) -> List[str]:
        """Remove every expired session and return the removed identifiers."""

        if self._ttl <= 0:
            return []
        removed: List[str] = []
        for shard in self._shards:
            with shard.lock:
                at = self._clock()
                candidates = [entry for entry in shard.entries.values() if self._is_expired(entry, at)]
            for entry in candidates:
                with entry.lock:
                    with shard.lock:
                        if entry.evicted or shard.entries.get(entry.session_id) is not entry:
                            continue
                        if not self._is_expired(entry, self._clock()):
                            continue
                        self._detach_locked(shard, entry)
                removed.append(entry.session_id)
        return removed

    def session_ids(self) -> List[str]:
        return [entry.session_id for entry in self._live_entries()]

    def summaries(self) -> List[SessionSummary]:
        """Return counts for every live session, oldest first."""

        summaries: List[SessionSummary] = []
        for entry in self._live_entries():
            with entry.lock:
                summaries.append(
                    SessionSummary(
                        id=entry.session_id,
                        created_at=entry.created_at,
                        updated_at=entry.updated_at,
                        frame_count=len(entry.frames),
                        transcript_count=len(entry.transcripts),
                        idle_seconds=max(0.0, self._clock() - entry.last_touch),
                    )
                )
        summaries.sort(key=lambda summary: summary.created_at)
        return summaries

    def close(self) -> None:
        """Drop every session."""

        for shard in self._shards:
            with shard.lock:
                entries = list(shard.entries.values())
            for entry in entries:
                with entry.lock:
                    with shard.lock:
                        self._detach_locked(shard, entry)

    def __len__(self) -> int:
        return len(self._live_entries())

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and self.exists(session_id)


class SessionSweeper:
    """Background thread that periodically expires idle sessions."""

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        interval_seconds: float,
        on_sweep: Optional[Callable[[List[str]], None]] = None,
    ) -> None:
        self._registry = registry
        self._interval = max(0.01, float(interval_seconds))
        self._on_sweep = on_sweep
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="capture-session-sweeper",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None

    def run_once(self) -> List[str]:
        removed = self._registry.sweep()
        if removed and self._on_sweep is not None:
            try:
                self._on_sweep(removed)
            except Exception:  # noqa: BLE001 - keep the sweeper alive
                LOGGER.exception("Sweep callback failed for %s session(s)", len(removed))
        return removed

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            self.run_once()


__all__ = [
    "CaptureSession",
    "FrameRecord",
    "SessionAlreadyExistsError",
    "SessionCapacityError",
    "SessionError",
    "SessionNotFoundError",
    "SessionRegistry",
    "SessionSummary",
    "SessionSweeper",
    "TranscriptFragment",
]
