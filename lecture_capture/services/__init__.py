"""Session registry, frame storage and consolidation services."""

from .sessions import (
    CaptureSession,
    FrameRecord,
    SessionAlreadyExistsError,
    SessionCapacityError,
    SessionError,
    SessionNotFoundError,
    SessionRegistry,
    SessionSummary,
    SessionSweeper,
    TranscriptFragment,
)

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
