from __future__ import annotations

from datetime import datetime

import httpx
import pytest
from rich.console import Console

from lecture_capture.ui.sessions import SessionRow, SessionsUI, _format_idle, fetch_sessions


def test_fetch_sessions_reads_listing_endpoint() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(
            200,
            json={
                "sessions": [
                    {
                        "sessionId": "abc",
                        "createdAt": "2024-05-01T10:00:00+00:00",
                        "frameCount": 3,
                        "transcriptCount": 2,
                        "idleSeconds": 4.5,
                    }
                ]
            },
        )

    client = httpx.Client(transport=httpx.MockTransport(handler))

    rows = fetch_sessions("http://capture.local/", client=client)

    assert seen == ["/api/recording/sessions"]
    assert rows == [SessionRow("abc", datetime.fromisoformat("2024-05-01T10:00:00+00:00"), 3, 2, 4.5)]


def test_fetch_sessions_raises_for_server_errors() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))

    with pytest.raises(httpx.HTTPStatusError):
        fetch_sessions("http://capture.local", client=client)


def test_session_row_tolerates_missing_fields() -> None:
    row = SessionRow.from_payload({"sessionId": "s", "createdAt": "not-a-date"})

    assert row.created_at is None
    assert row.frame_count == 0
    assert row.idle_seconds == 0.0


@pytest.mark.parametrize(("seconds", "expected"), [(0, "0s"), (59.9, "59s"), (61, "1m 01s"), (3725, "1h 02m")])
def test_format_idle(seconds: float, expected: str) -> None:
    assert _format_idle(seconds) == expected


def test_sessions_ui_renders_table_and_totals() -> None:
    console = Console(record=True, width=120)
    rows = [SessionRow("abc", None, 3, 2, 5), SessionRow("def", None, 1, 0, 70)]

    SessionsUI(rows, console=console).run()

    output = console.export_text()
    assert "Live Capture Sessions" in output
    assert "abc" in output and "def" in output
    assert "2 session(s)" in output
    assert "4 frame(s)" in output


def test_sessions_ui_renders_empty_panel() -> None:
    console = Console(record=True, width=80)

    SessionsUI([], console=console).run()

    assert "No capture sessions are in progress." in console.export_text()
