"""Runtime counters and a bounded buffer of recent log records.

Read-only observability for the HTTP status API. The router reports into
the board; nothing in the relay depends on reading it back.
"""

from __future__ import annotations

import collections
import logging
import time
from typing import Any

DEFAULT_MAX_LOGS = 500


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}h {minutes}m {secs}s"


class StatusBoard:
    def __init__(self, max_logs: int = DEFAULT_MAX_LOGS):
        self.status = "running"
        self.started_at = time.time()
        self.sessions = 0
        self.messages = 0
        self.errors = 0
        self.logs: collections.deque[dict[str, Any]] = collections.deque(maxlen=max_logs)

    def record_message(self) -> None:
        self.messages += 1

    def record_error(self) -> None:
        self.errors += 1

    def set_sessions(self, count: int) -> None:
        self.sessions = count

    def add_log(self, level: str, message: str, event: str = "") -> None:
        entry: dict[str, Any] = {
            "timestamp": int(time.time() * 1000),
            "level": level,
            "message": message,
        }
        if event:
            entry["event"] = event
        self.logs.append(entry)

    def snapshot(self) -> dict[str, Any]:
        uptime = time.time() - self.started_at
        return {
            "status": self.status,
            "sessions": self.sessions,
            "messages": self.messages,
            "errors": self.errors,
            "uptime_seconds": round(uptime),
            "uptime": format_uptime(uptime),
            "started_at": self.started_at,
        }


class RecentLogHandler(logging.Handler):
    """Mirror log records into a StatusBoard's recent-log buffer."""

    def __init__(self, board: StatusBoard, level: int = logging.INFO):
        super().__init__(level)
        self.board = board

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.board.add_log(
                record.levelname.lower(),
                record.getMessage(),
                event=getattr(record, "event", ""),
            )
        except Exception:
            self.handleError(record)
