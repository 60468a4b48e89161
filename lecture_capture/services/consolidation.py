"""Turn a finished capture session into one multimodal generation request."""

from __future__ import annotations

import logging
import math
import mimetypes
from dataclasses import dataclass, field
from typing import List, Protocol, Sequence, Union

from .sessions import CaptureSession, FrameRecord, SessionRegistry
from .uploads import FrameStore


LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_FRAMES = 10

DEFAULT_INSTRUCTIONS = (
    "You are an expert lecture note-taker. The following materials were captured "
    "during a live classroom lecture: transcript fragments and periodic screenshots. "
    "Produce well-structured Markdown study notes covering the main topics, key "
    "concepts, definitions and formulas, organised chronologically and thematically.\n\n"
    "Here are the lecture materials:"
)


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    mime_type: str
    data: bytes
    label: str


RequestPart = Union[TextPart, ImagePart]


@dataclass
class ConsolidationRequest:
    """Ordered prompt parts plus bookkeeping about what was included."""

    session_id: str
    parts: List[RequestPart] = field(default_factory=list)
    transcript_count: int = 0
    frame_count: int = 0
    included_frames: List[str] = field(default_factory=list)
    skipped_frames: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def images(self) -> List[ImagePart]:
        return [part for part in self.parts if isinstance(part, ImagePart)]


@dataclass(frozen=True)
class ConsolidationResult:
    session_id: str
    notes: str
    request: ConsolidationRequest
    evicted: bool = True


class NoteGenerator(Protocol):
    """Anything that can turn a consolidation request into notes."""

    def generate(self, request: ConsolidationRequest) -> str:
        ...


def format_offset(offset_ms: int) -> str:
    """Return ``<seconds>s`` with the seconds floored."""

    return f"{math.floor(offset_ms / 1000)}s"


def sample_frames(frames: Sequence[FrameRecord], max_frames: int = DEFAULT_MAX_FRAMES) -> List[FrameRecord]:
    """Pick at most *max_frames* frames spread evenly across the capture."""

    if max_frames <= 0 or not frames:
        return []
    step = math.ceil(len(frames) / max_frames)
    return [frame for index, frame in enumerate(frames) if index % step == 0][:max_frames]


def _guess_mime_type(display_name: str) -> str:
    guessed, _ = mimetypes.guess_type(display_name)
    if guessed and guessed.startswith("image/"):
        return guessed
    return "image/jpeg"


def build_consolidation_request(
    session: CaptureSession,
    frame_store: FrameStore,
    *,
    max_frames: int = DEFAULT_MAX_FRAMES,
    instructions: str = DEFAULT_INSTRUCTIONS,
) -> ConsolidationRequest:
    """Assemble transcript text and sampled frame images for *session*.

    Frames whose bytes can no longer be read are skipped and reported in
    ``skipped_frames``.
    """

    request = ConsolidationRequest(
        session_id=session.id,
        transcript_count=session.transcript_count,
        frame_count=session.frame_count,
    )
    request.parts.append(TextPart(instructions))

    if session.transcripts:
        transcript_text = "\n\n".join(
            f"[{format_offset(fragment.offset_ms)}] {fragment.text}"
            for fragment in session.transcripts
        )
        request.parts.append(TextPart(f"\n\nTRANSCRIPTS:\n{transcript_text}"))

    for frame in sample_frames(session.frames, max_frames):
        try:
            data = frame_store.read_bytes(frame.storage_ref)
        except (OSError, ValueError) as error:
            LOGGER.warning("Skipping unreadable frame %s: %s", frame.storage_ref, error)
            request.skipped_frames.append(frame.storage_ref)
            continue
        label = f"[Image at {format_offset(frame.offset_ms)} - {frame.display_name}]"
        request.parts.append(ImagePart(_guess_mime_type(frame.display_name), data, label))
        request.parts.append(TextPart(label))
        request.included_frames.append(frame.storage_ref)

    return request


def consolidate(
    registry: SessionRegistry,
    session_id: str,
    frame_store: FrameStore,
    generator: NoteGenerator,
    *,
    max_frames: int = DEFAULT_MAX_FRAMES,
    discard_frames: bool = False,
) -> ConsolidationResult:
    """Read *session_id* once, generate notes and evict the session.

    Records appended while the generator runs are not part of the notes, so a
    session that grew in the meantime is kept (``evicted`` is ``False`` on the
    result) and its frames are never discarded. A failing generator leaves
    the session in place so the caller can retry; idle expiry still reclaims
    it eventually. A
    :class:`~lecture_capture.services.sessions.SessionNotFoundError` from the
    initial read propagates untouched.
    """

    session = registry.get(session_id)
    request = build_consolidation_request(session, frame_store, max_frames=max_frames)
    notes = generator.generate(request)

    evicted = registry.evict_if_unchanged(session_id, session.frame_count, session.transcript_count)
    if not evicted:
        LOGGER.warning(
            "Capture session %s changed during note generation; not evicting it",
            session_id,
        )
    elif discard_frames:
        frame_store.discard_session(session_id)
    return ConsolidationResult(session_id=session_id, notes=notes, request=request, evicted=evicted)


__all__ = [
    "ConsolidationRequest",
    "ConsolidationResult",
    "DEFAULT_MAX_FRAMES",
    "ImagePart",
    "NoteGenerator",
    "TextPart",
    "build_consolidation_request",
    "consolidate",
    "format_offset",
    "sample_frames",
]
