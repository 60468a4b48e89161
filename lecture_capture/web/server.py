"""FastAPI application receiving live capture uploads."""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import functools
import logging
import os
import re
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..config import AppConfig
from ..services.consolidation import DEFAULT_MAX_FRAMES, NoteGenerator, consolidate
from ..services.events import emit_file_event, emit_session_event, emit_structured_event
from ..services.sessions import (
    CaptureSession,
    SessionAlreadyExistsError,
    SessionCapacityError,
    SessionNotFoundError,
    SessionRegistry,
    SessionSummary,
    SessionSweeper,
)
from ..services.uploads import FrameStore


MAX_UPLOAD_ENV_VAR = "LECTURE_CAPTURE_MAX_UPLOAD_BYTES"
_DEFAULT_MAX_UPLOAD_BYTES = 64 * 1024 * 1024

_FRAME_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}
_LEADING_INTEGER = re.compile(r"\s*([+-]?\d+)")


def get_max_upload_bytes() -> int:
    """Return the configured maximum request size in bytes; ``0`` disables the limit."""

    raw = (os.environ.get(MAX_UPLOAD_ENV_VAR) or "").strip()
    if not raw:
        return _DEFAULT_MAX_UPLOAD_BYTES
    try:
        return max(0, int(raw))
    except ValueError:
        return _DEFAULT_MAX_UPLOAD_BYTES


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "lecture_capture_request_id",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _collect_correlation_context() -> Dict[str, str]:
    request_id = _REQUEST_ID_VAR.get()
    return {"request_id": request_id} if request_id else {}


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra or {})
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in _collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("lecture_capture.events"), {})


def _log_event(message: str, **context: Any) -> None:
    emit_structured_event(
        "APP_EVENT",
        message,
        context={**context, **_collect_correlation_context()},
        logger=EVENT_LOGGER,
    )


def _emit_session_event(action: str, session_id: str, level: int = logging.INFO, **payload: Any) -> None:
    emit_session_event(
        action,
        session_id,
        context=_collect_correlation_context(),
        payload=payload,
        level=level,
        logger=EVENT_LOGGER,
    )


def _emit_file_event(operation: str, **kwargs: Any) -> None:
    emit_file_event(
        operation,
        context=_collect_correlation_context(),
        logger=EVENT_LOGGER,
        **kwargs,
    )


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and echo it in ``X-Request-ID``."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope.setdefault("state", {})
        if isinstance(scope["state"], dict):
            scope["state"]["request_id"] = request_id

        async def send_with_request_id(message: Message) -> None:
            if message.get("type") == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode("latin-1")))
                message["headers"] = headers
            await send(message)

        token = _REQUEST_ID_VAR.set(request_id)
        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            _REQUEST_ID_VAR.reset(token)


class UploadLimitMiddleware:
    """Reject requests whose declared body exceeds the configured upload limit."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        limit = get_max_upload_bytes()
        if scope.get("type") != "http" or limit <= 0:
            await self.app(scope, receive, send)
            return

        declared: Optional[int] = None
        for key, value in scope.get("headers", []):
            if key.lower() == b"content-length":
                with contextlib.suppress(ValueError):
                    declared = int(value.decode("latin-1"))
                break

        if declared is not None and declared > limit:
            LOGGER.warning("Rejected %s byte request above the %s byte limit", declared, limit)
            response = JSONResponse(
                {"detail": f"Upload exceeds the {limit} byte limit"},
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


class SessionRequest(BaseModel):
    sessionId: Optional[str] = None


def _normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _parse_offset(value: Optional[str]) -> int:
    """Return the leading integer in *value* (``"12abc"`` is 12); otherwise ``0``."""

    match = _LEADING_INTEGER.match(value or "")
    return int(match.group(1)) if match else 0


def _require_session_id(value: Optional[str]) -> str:
    session_id = (value or "").strip()
    if not session_id:
        raise HTTPException(status_code=400, detail="Session ID required")
    return session_id


def _frame_extension(filename: Optional[str]) -> str:
    suffix = Path(filename or "").suffix.lower()
    return suffix if suffix in _FRAME_EXTENSIONS else ".jpg"


def _serialize_session(session: CaptureSession) -> Dict[str, Any]:
    return {
        "sessionId": session.id,
        "createdAt": session.created_at.isoformat(),
        "updatedAt": session.updated_at.isoformat(),
        "frames": [
            {
                "storageRef": frame.storage_ref,
                "displayName": frame.display_name,
                "offsetMillis": frame.offset_ms,
            }
            for frame in session.frames
        ],
        "transcripts": [
            {"text": fragment.text, "offsetMillis": fragment.offset_ms}
            for fragment in session.transcripts
        ],
    }


def _serialize_summary(summary: SessionSummary) -> Dict[str, Any]:
    return {
        "sessionId": summary.id,
        "createdAt": summary.created_at.isoformat(),
        "updatedAt": summary.updated_at.isoformat(),
        "frameCount": summary.frame_count,
        "transcriptCount": summary.transcript_count,
        "idleSeconds": round(summary.idle_seconds, 3),
    }


def create_app(
    registry: SessionRegistry,
    *,
    config: AppConfig,
    frame_store: Optional[FrameStore] = None,
    generator: Optional[NoteGenerator] = None,
    root_path: str | None = None,
    discard_frames: bool = False,
    max_prompt_frames: int = DEFAULT_MAX_FRAMES,
) -> FastAPI:
    """Return a configured FastAPI application bound to *registry*."""

    store = frame_store or FrameStore(config.uploads_root)
    store.configure_event_emitter(_emit_file_event)

    def _report_sweep(removed: list[str]) -> None:
        for session_id in removed:
            _emit_session_event("Expired idle capture session", session_id)
            if discard_frames:
                store.discard_session(session_id)

    sweeper: Optional[SessionSweeper] = None
    if registry.ttl_seconds > 0:
        sweeper = SessionSweeper(
            registry,
            interval_seconds=config.sweep_interval_seconds,
            on_sweep=_report_sweep,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if sweeper is not None:
            sweeper.start()
            LOGGER.info(
                "Session sweeper started (ttl=%.0fs, interval=%.0fs)",
                registry.ttl_seconds,
                config.sweep_interval_seconds,
            )
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.stop()
            remaining = len(registry)
            if remaining:
                LOGGER.warning("Discarding %s unconsolidated capture session(s) on shutdown", remaining)
            registry.close()

    app = FastAPI(
        title="Lecture Capture",
        description="Accumulate live lecture frames and transcripts for note generation",
        root_path=_normalize_root_path(root_path),
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.frame_store = store
    app.state.generator = generator
    app.state.sweeper = sweeper
    app.state.server = None

    app.add_middleware(UploadLimitMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "sessions": len(registry),
            "generatorAvailable": app.state.generator is not None,
        }

    @app.post("/api/recording/start", status_code=status.HTTP_201_CREATED)
    async def start_recording() -> Dict[str, Any]:
        while True:
            session_id = _new_correlation_id()
            try:
                registry.create(session_id)
            except SessionAlreadyExistsError:
                continue
            break
        _emit_session_event("Capture session started", session_id)
        return {"sessionId": session_id}

    @app.post("/api/recording/upload")
    async def upload_chunk(
        sessionId: Optional[str] = Form(None),
        timestamp: Optional[str] = Form(None),
        transcript: Optional[str] = Form(None),
        frame: Optional[UploadFile] = File(None),
    ) -> Dict[str, Any]:
        session_id = _require_session_id(sessionId)
        offset_ms = _parse_offset(timestamp)

        if not registry.exists(session_id):
            with contextlib.suppress(SessionAlreadyExistsError):
                registry.create(session_id)
                _emit_session_event("Capture session created by upload", session_id)

        frame_count: Optional[int] = None
        transcript_count: Optional[int] = None

        if frame is not None:
            try:
                stored = await store.save_upload(
                    session_id,
                    frame.file,
                    extension=_frame_extension(frame.filename),
                )
            except OSError as error:
                LOGGER.exception("Failed to persist frame for session %s", session_id)
                raise HTTPException(status_code=500, detail="Upload failed") from error
            finally:
                await frame.close()

            try:
                frame_count = registry.append_frame(
                    session_id,
                    stored.storage_ref,
                    stored.display_name,
                    offset_ms,
                )
            except SessionCapacityError as error:
                with contextlib.suppress(OSError):
                    stored.path.unlink()
                _emit_session_event(
                    "Rejected frame above session capacity",
                    session_id,
                    level=logging.WARNING,
                    limit=error.limit,
                )
                raise HTTPException(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail=str(error),
                ) from error
            LOGGER.debug("Frame %s stored for session %s", stored.display_name, session_id)

        if transcript:
            transcript_count = registry.append_transcript(session_id, transcript, offset_ms)

        if frame_count is None or transcript_count is None:
            try:
                snapshot = registry.get(session_id)
            except SessionNotFoundError:
                snapshot = None
            if snapshot is not None:
                frame_count = snapshot.frame_count if frame_count is None else frame_count
                transcript_count = (
                    snapshot.transcript_count if transcript_count is None else transcript_count
                )

        return {
            "success": True,
            "frameCount": frame_count or 0,
            "transcriptCount": transcript_count or 0,
        }

    @app.post("/api/recording/end")
    async def end_recording(payload: SessionRequest) -> Dict[str, Any]:
        session_id = _require_session_id(payload.sessionId)
        try:
            session = registry.get(session_id)
        except SessionNotFoundError:
            _emit_session_event(
                "Recording ended for unknown session",
                session_id,
                level=logging.WARNING,
            )
            return {"success": True, "frameCount": 0, "transcriptCount": 0}

        _emit_session_event(
            "Recording ended",
            session_id,
            frames=session.frame_count,
            transcripts=session.transcript_count,
        )
        return {
            "success": True,
            "frameCount": session.frame_count,
            "transcriptCount": session.transcript_count,
        }

    @app.get("/api/recording/sessions")
    async def list_sessions() -> Dict[str, Any]:
        return {"sessions": [_serialize_summary(summary) for summary in registry.summaries()]}

    @app.get("/api/recording/{session_id}")
    async def get_recording(session_id: str) -> Dict[str, Any]:
        try:
            session = registry.get(session_id)
        except SessionNotFoundError as error:
            raise HTTPException(status_code=404, detail="Session not found") from error
        return _serialize_session(session)

    @app.delete("/api/recording/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_recording(session_id: str, discard: bool = False) -> Response:
        removed = registry.evict(session_id)
        if discard:
            store.discard_session(session_id)
        if removed:
            _emit_session_event("Capture session evicted", session_id, discard=discard)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/generate-notes")
    async def generate_notes(payload: SessionRequest, request: Request) -> Dict[str, Any]:
        session_id = _require_session_id(payload.sessionId)
        active_generator: Optional[NoteGenerator] = request.app.state.generator
        if active_generator is None:
            raise HTTPException(status_code=503, detail="Note generation is not configured")

        _log_event("Generating notes", session_id=session_id)
        loop = asyncio.get_running_loop()
        operation = functools.partial(
            consolidate,
            registry,
            session_id,
            store,
            active_generator,
            max_frames=max_prompt_frames,
            discard_frames=discard_frames,
        )
        try:
            result = await loop.run_in_executor(None, contextvars.copy_context().run, operation)
        except SessionNotFoundError as error:
            raise HTTPException(status_code=404, detail="Session not found") from error
        except Exception as error:  # noqa: BLE001 - generator failures are reported upstream
            LOGGER.exception("Note generation failed for session %s", session_id)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"Failed to generate notes: {error}",
            ) from error

        _emit_session_event(
            "Notes generated",
            session_id,
            frames=result.request.frame_count,
            transcripts=result.request.transcript_count,
            sampled_frames=len(result.request.included_frames),
            skipped_frames=len(result.request.skipped_frames),
            characters=len(result.notes),
            evicted=result.evicted,
        )
        return {"notes": result.notes, "sessionId": session_id}

    return app


__all__ = ["create_app", "get_max_upload_bytes"]
