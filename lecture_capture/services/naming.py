"""Utility helpers for consistent upload naming."""

from __future__ import annotations

import hashlib
import re
import secrets
import time
from typing import Optional

__all__ = [
    "build_frame_name",
    "session_directory_name",
    "slugify",
]


def slugify(value: str) -> str:
    """Return a filesystem-friendly representation of *value*."""

    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "item"


def session_directory_name(session_id: str) -> str:
    """Return a directory name that is unique per opaque *session_id*.

    Identifiers that are already filesystem friendly are used verbatim; others
    get a short digest suffix so that distinct identifiers never share a
    directory after slugification.
    """

    slug = slugify(session_id)[:48]
    if slug == session_id:
        return slug
    digest = hashlib.sha1(session_id.encode("utf-8")).hexdigest()[:10]
    return f"{slug}-{digest}"


def build_frame_name(
    *,
    timestamp_ms: Optional[int] = None,
    token: Optional[str] = None,
    extension: str = ".jpg",
) -> str:
    """Return ``frame_<ms>_<token><extension>`` for a captured still."""

    stamp = int(time.time() * 1000) if timestamp_ms is None else int(timestamp_ms)
    suffix = token or secrets.token_hex(3)
    if extension and not extension.startswith("."):
        extension = f".{extension}"
    return f"frame_{stamp}_{suffix}{extension.lower()}"
