"""Live lecture capture: upload ingest and session consolidation."""

__version__ = "0.1.0"
