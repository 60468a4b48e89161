"""Web interface for the Lecture Capture service."""

from .server import create_app, get_max_upload_bytes

__all__ = ["create_app", "get_max_upload_bytes"]
