"""Structured log events for capture sessions and frame files."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Union


EVENT_LOGGER = logging.getLogger("lecture_capture.events")

_MAX_VALUE_LENGTH = 200

EventLogger = Union[logging.Logger, logging.LoggerAdapter]


def clean_fields(values: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Drop empty entries; numbers and booleans pass through, the rest become trimmed text."""

    cleaned: Dict[str, Any] = {}
    for key, value in (values or {}).items():
        if not key or value is None:
            continue
        if not isinstance(value, (bool, int, float)):
            value = str(value).strip()
            if not value:
                continue
            if len(value) > _MAX_VALUE_LENGTH:
                value = value[:_MAX_VALUE_LENGTH] + "…"
        cleaned[str(key)] = value
    return cleaned


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    context: Optional[Mapping[str, Any]] = None,
    payload: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: EventLogger = EVENT_LOGGER,
) -> None:
    """Log ``[event_type] message (key=value, ...)`` and attach the fields as ``extra``.

    *context* identifies what the event is about (session, request);
    *payload* carries the measurements.
    """

    context_fields = clean_fields(context)
    payload_fields = clean_fields(payload)
    details = ", ".join(f"{key}={value}" for key, value in {**context_fields, **payload_fields}.items())
    text = f"[{event_type}] {message.strip()}"
    if details:
        text = f"{text} ({details})"

    extra: Dict[str, Any] = {
        "event": message.strip(),
        "event_type": event_type,
        "event_context": context_fields,
        "event_payload": payload_fields,
    }
    if duration_ms is not None:
        extra["event_duration_ms"] = float(duration_ms)
    logger.log(level, text, extra=extra)


def emit_session_event(
    action: str,
    session_id: str,
    *,
    context: Optional[Mapping[str, Any]] = None,
    payload: Optional[Mapping[str, Any]] = None,
    level: int = logging.INFO,
    logger: EventLogger = EVENT_LOGGER,
) -> None:
    emit_structured_event(
        "SESSION",
        action,
        context={"session_id": session_id, **(context or {})},
        payload=payload,
        level=level,
        logger=logger,
    )


def emit_file_event(operation: str, **kwargs: Any) -> None:
    emit_structured_event("FILE_OP", operation, **kwargs)


__all__ = [
    "EVENT_LOGGER",
    "clean_fields",
    "emit_file_event",
    "emit_session_event",
    "emit_structured_event",
]
