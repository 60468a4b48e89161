"""A Rich-powered console view of the capture sessions held by a running server."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


SESSIONS_ENDPOINT = "/api/recording/sessions"


@dataclass
class SessionRow:
    session_id: str
    created_at: Optional[datetime]
    frame_count: int
    transcript_count: int
    idle_seconds: float

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SessionRow":
        created_raw = payload.get("createdAt")
        created_at: Optional[datetime] = None
        if isinstance(created_raw, str):
            try:
                created_at = datetime.fromisoformat(created_raw)
            except ValueError:
                created_at = None
        return cls(
            session_id=str(payload.get("sessionId", "")),
            created_at=created_at,
            frame_count=int(payload.get("frameCount") or 0),
            transcript_count=int(payload.get("transcriptCount") or 0),
            idle_seconds=float(payload.get("idleSeconds") or 0.0),
        )


def fetch_sessions(base_url: str, *, client: Optional[httpx.Client] = None, timeout: float = 5.0) -> List[SessionRow]:
    """Return the live sessions reported by the server at *base_url*."""

    url = base_url.rstrip("/") + SESSIONS_ENDPOINT
    if client is None:
        with httpx.Client(timeout=timeout) as owned_client:
            response = owned_client.get(url)
    else:
        response = client.get(url)
    response.raise_for_status()
    payload = response.json()
    return [SessionRow.from_payload(entry) for entry in payload.get("sessions", [])]


def _format_idle(seconds: float) -> str:
    seconds = max(0, int(seconds))
    minutes, remainder = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {remainder:02d}s"
    return f"{remainder}s"


class SessionsUI:
    """Render live capture sessions as a table."""

    def __init__(self, rows: Iterable[SessionRow], *, console: Optional[Console] = None) -> None:
        self._rows = list(rows)
        self._console = console or Console()

    def run(self) -> None:
        console = self._console
        console.rule("[bold magenta]Live Capture Sessions")

        if not self._rows:
            console.print(
                Panel(
                    "No capture sessions are in progress.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        console.print(self._build_table())
        total_frames = sum(row.frame_count for row in self._rows)
        total_transcripts = sum(row.transcript_count for row in self._rows)
        console.print(
            Text(
                f"{len(self._rows)} session(s) · {total_frames} frame(s) · "
                f"{total_transcripts} transcript fragment(s)",
                style="dim",
            ),
            justify="center",
        )

    def _build_table(self) -> Table:
        table = Table(box=box.SIMPLE_HEAVY, header_style="bold cyan")
        table.add_column("Session")
        table.add_column("Started")
        table.add_column("Frames", justify="right")
        table.add_column("Transcripts", justify="right")
        table.add_column("Idle", justify="right")
        for row in self._rows:
            started = row.created_at.strftime("%Y-%m-%d %H:%M:%S") if row.created_at else "?"
            table.add_row(
                row.session_id,
                started,
                str(row.frame_count),
                str(row.transcript_count),
                _format_idle(row.idle_seconds),
            )
        return table


__all__ = ["SessionRow", "SessionsUI", "fetch_sessions"]
