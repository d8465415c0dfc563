"""Durable, append-only record of every proxy decision."""

import logging
import re
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

BROWSER_PATTERN = re.compile(r"(mozilla|chrome|safari|firefox|edge)", re.IGNORECASE)


def iso_timestamp() -> str:
    """Current UTC time as ISO-8601 with millisecond precision, e.g. 2025-05-22T10:30:15.123Z."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_record(timestamp: str, prefix: str, method: str, host: str, path: str = "") -> str:
    return f"{timestamp}  {prefix} {method:<6} {host}{path}"


class _QuietHandlerMixin:
    """Write failures on the decision sinks never reach the caller."""

    def handleError(self, record: logging.LogRecord) -> None:
        pass


class _DecisionFileHandler(_QuietHandlerMixin, logging.FileHandler):
    pass


class _DecisionConsoleHandler(_QuietHandlerMixin, logging.StreamHandler):
    pass


class BrowserHostFilter(logging.Filter):
    """Only let through records whose host looks like it came from a browser.

    This is a match on the host string, not on the client's User-Agent.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "banner", False):
            return True
        host = getattr(record, "host", "") or ""
        return bool(BROWSER_PATTERN.search(host))


class DecisionLog:
    """Appends one line per decision to the log file and mirrors it to the console."""

    def __init__(self, path: str, browser_only: bool = True, console: bool = True) -> None:
        self.path = Path(path)
        self.browser_only = browser_only
        self._lock = threading.Lock()
        self._closed = False
        self.path.parent.mkdir(parents=True, exist_ok=True)

        formatter = logging.Formatter("%(message)s")
        self._file_handler = _DecisionFileHandler(self.path, mode="a", encoding="utf-8")
        self._file_handler.setFormatter(formatter)

        self._console_handler = None
        if console:
            self._console_handler = _DecisionConsoleHandler(sys.stdout)
            self._console_handler.setFormatter(formatter)
            if browser_only:
                self._console_handler.addFilter(BrowserHostFilter())

    def record(self, prefix: str, method: str, host: str, path: str = "") -> None:
        """Log a decision. Never raises."""
        line = format_record(iso_timestamp(), prefix, method or "-", host or "", path or "")
        log_record = logging.makeLogRecord({"msg": line, "host": host or ""})
        with self._lock:
            if self._closed:
                return
            self._file_handler.handle(log_record)
            if self._console_handler is not None:
                self._console_handler.handle(log_record)

    def note(self, message: str) -> None:
        """Write an unfiltered, timestamped informational line (startup banner)."""
        with self._lock:
            if self._closed:
                return
            self._file_handler.handle(
                logging.makeLogRecord({"msg": f"{iso_timestamp()}  {message}"})
            )
            if self._console_handler is not None:
                self._console_handler.handle(logging.makeLogRecord({"msg": message, "banner": True}))

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._file_handler.flush()
            self._file_handler.close()
            if self._console_handler is not None:
                self._console_handler.flush()
