"""Per-session log capture for ingestion jobs.

Keeps an in-memory buffer of log lines for each running session. Live
callers read from the buffer; when the session finishes the text is
stored in ``ingestion_sessions.log_output``.
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

# Safety bound to prevent unbounded memory growth
MAX_LOG_LINES = 5000


class SessionLogCapture:
    """Buffers formatted log lines per active session."""

    def __init__(self, max_lines: int = MAX_LOG_LINES):
        self.max_lines = max_lines
        self._buffers: dict[UUID, list[str]] = {}

    def start(self, session_id: UUID) -> None:
        self._buffers[session_id] = []

    def append(self, session_id: UUID, level: str, message: str) -> None:
        buf = self._buffers.get(session_id)
        if buf is None:
            return
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        line = f"{timestamp} [{level:>7s}] {message}"
        if len(buf) < self.max_lines:
            buf.append(line)
        elif len(buf) == self.max_lines:
            buf.append(f"{timestamp} [WARNING] Log output truncated at {self.max_lines} lines")

    def live(self, session_id: UUID, offset: int = 0) -> list[str] | None:
        """Lines captured so far, or None if the session is not capturing."""
        buf = self._buffers.get(session_id)
        if buf is None:
            return None
        return buf[offset:]

    def finish(self, session_id: UUID) -> str:
        """End capture and return the full text."""
        return "\n".join(self._buffers.pop(session_id, []))

    def handler(self, session_id: UUID) -> "SessionLogHandler":
        handler = SessionLogHandler(self, session_id)
        handler.setFormatter(logging.Formatter("%(message)s"))
        return handler


class SessionLogHandler(logging.Handler):
    """Logging handler feeding one session's buffer."""

    def __init__(self, capture: SessionLogCapture, session_id: UUID):
        super().__init__()
        self.capture = capture
        self.session_id = session_id

    def emit(self, record: logging.LogRecord) -> None:
        # Shared source loggers carry records of concurrent sessions too.
        record_session = getattr(record, "session_id", None)
        if record_session is not None and str(record_session) != str(self.session_id):
            return
        try:
            self.capture.append(self.session_id, record.levelname, self.format(record))
        except Exception:
            self.handleError(record)
