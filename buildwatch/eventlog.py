"""
Append-only event log shared by the supervisor and the managed server.

Every entry is written as `[YYYY-MM-DD HH:MM:SS] message` to both the log
file and the console. A bounded in-memory copy of recent entries backs the
status API.
"""

import logging
import sys
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
ROOT_LOGGER = "buildwatch"


@dataclass(frozen=True)
class LogEntry:
    """One emitted log line."""

    timestamp: datetime
    message: str

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.strftime(DATE_FORMAT),
            "message": self.message,
        }


class MonotonicTimestampFilter(logging.Filter):
    """Clamp record times so successive entries never go backwards."""

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._last = 0.0

    def filter(self, record: logging.LogRecord) -> bool:
        with self._lock:
            if record.created < self._last:
                record.created = self._last
                record.msecs = (self._last - int(self._last)) * 1000
            self._last = record.created
        return True


class RecentEntriesHandler(logging.Handler):
    """Keeps the most recent entries in memory."""

    def __init__(self, capacity: int):
        super().__init__()
        self.entries: deque[LogEntry] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord):
        try:
            entry = LogEntry(
                timestamp=datetime.fromtimestamp(record.created),
                message=record.getMessage(),
            )
        except Exception:
            self.handleError(record)
            return
        self.entries.append(entry)


class SerializedSink(logging.Handler):
    """
    Fans each record out to several handlers under one lock.

    Timestamps are clamped inside that lock, so the order records are written
    in always matches the order of their timestamps.
    """

    def __init__(self, handlers: list[logging.Handler]):
        super().__init__()
        self.handlers = list(handlers)
        self._clamp = MonotonicTimestampFilter()

    def emit(self, record: logging.LogRecord):
        # handle() already holds this handler's lock.
        self._clamp.filter(record)
        for handler in self.handlers:
            handler.handle(record)

    def close(self):
        for handler in self.handlers:
            handler.close()
        super().close()


class EventLog:
    """Dual-sink (file + console) log for every buildwatch component."""

    def __init__(self, log_file: Path, recent: int = 500, stream=None):
        self.log_file = Path(log_file)
        self.logger = logging.getLogger(ROOT_LOGGER)

        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self._file_handler = logging.FileHandler(self.log_file, mode="a", encoding="utf-8")
        self._console_handler = logging.StreamHandler(stream or sys.stdout)
        self._recent_handler = RecentEntriesHandler(recent)
        for handler in (self._file_handler, self._console_handler, self._recent_handler):
            handler.setFormatter(formatter)
        self._sink = SerializedSink([self._file_handler, self._console_handler, self._recent_handler])

    def install(self) -> "EventLog":
        """Attach the handlers to the `buildwatch` logger."""
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        self.logger.addHandler(self._sink)
        return self

    def close(self):
        """Detach and close the handlers."""
        self.logger.removeHandler(self._sink)
        self._sink.close()

    def emit(self, message: str, logger_name: Optional[str] = None):
        """Append a plain message to the log."""
        name = f"{ROOT_LOGGER}.{logger_name}" if logger_name else ROOT_LOGGER
        logging.getLogger(name).info(message)

    def recent(self, limit: int = 100) -> list[LogEntry]:
        """Most recent entries, oldest first."""
        entries = list(self._recent_handler.entries)
        return entries[-limit:] if limit else entries


def capture_output(stream, logger: logging.Logger, level: int = logging.INFO, prefix: str = ""):
    """
    Copy a child process's output into the log, one entry per line.

    Runs until the stream reaches EOF, which happens when the child exits.
    """
    try:
        for line in iter(stream.readline, b""):
            decoded = line.decode("utf-8", errors="replace").rstrip()
            if decoded:
                logger.log(level, f"{prefix}{decoded}")
    except (OSError, ValueError) as e:
        logger.error(f"Error reading process output: {e}")
    finally:
        try:
            stream.close()
        except OSError:
            pass


def start_capture_thread(
    stream, logger: logging.Logger, level: int = logging.INFO, prefix: str = ""
) -> threading.Thread:
    """Start a daemon thread running capture_output()."""
    thread = threading.Thread(
        target=capture_output,
        args=(stream, logger, level, prefix),
        daemon=True,
    )
    thread.start()
    return thread
