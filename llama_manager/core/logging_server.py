"""
Logging Configuration Module

This module provides logging configuration for the manager process and the
shared log sink that collects engine output and manager events for operators.

Features:
    - Structured JSON format for machine-readable logs
    - Human-readable format as fallback
    - Console and file handlers
    - Suppression for noisy libraries (httpx, httpcore)
    - LogSink: bounded in-memory buffer served at /api/logs

Log Fields (Structured Mode):
    - timestamp: ISO format timestamp
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - module: Python module name
    - function: Function name
    - line: Line number
    - source: (optional) Log sink source ("llama", "proxy", "models", ...)
    - preset_id: (optional) Related preset
    - exception: (optional) Exception traceback

Log Files:
    - logs/manager.log: Main application logs (includes mirrored sink lines)

Usage:
    from llama_manager.core.logging_server import setup_logging, LogSink

    setup_logging(log_level=logging.INFO, use_structured=False)

    sink = LogSink()
    sink.add_log("proxy", "Restarting llama-server for preset qwen3-8b")
"""

import sys
import json
import time
import logging
from collections import deque
from dataclasses import dataclass, asdict
from pathlib import Path
from datetime import datetime, timezone
from typing import Deque, List, Optional


SINK_LOGGER_NAME = "llama_manager.sink"
DEFAULT_SINK_SIZE = 500


class StructuredFormatter(logging.Formatter):
    """
    Custom formatter for structured JSON logging.

    Outputs log records as JSON objects with consistent field names,
    making logs easy to parse with tools like jq, Elasticsearch, or Loki.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        for field in ("source", "preset_id", "request_id"):
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


class SimpleFormatter(logging.Formatter):
    """
    Simple human-readable log formatter with milliseconds.

    Format: [TIMESTAMP.mmm] LEVEL:LOGGER:MESSAGE
    """

    def __init__(self):
        super().__init__(
            fmt="[%(asctime)s] %(levelname)s:%(name)s:%(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    def formatTime(self, record: logging.LogRecord, datefmt: str = None) -> str:
        ct = datetime.fromtimestamp(record.created)
        s = ct.strftime(datefmt or "%Y-%m-%d %H:%M:%S")
        return f"{s}.{int(record.msecs):03d}"


def setup_logging(
    log_level: int = logging.INFO,
    use_structured: bool = True,
    log_dir: Optional[str] = None
) -> None:
    """
    Configure application logging.

    Sets up console and file handlers with the specified format.
    Creates log directory if it doesn't exist.

    Args:
        log_level: Minimum log level to capture (default: INFO)
        use_structured: Use JSON format if True, simple format if False
        log_dir: Directory for log files (default: "logs")
    """
    formatter = StructuredFormatter() if use_structured else SimpleFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    log_path = Path(log_dir) if log_dir else Path("logs")
    log_path.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(
        log_path / "manager.log",
        encoding="utf-8"
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    _suppress_noisy_loggers()


def _suppress_noisy_loggers() -> None:
    """Suppress verbose logging from third-party libraries."""
    noisy_loggers = [
        "httpx",
        "httpcore",
        "uvicorn.access",
    ]

    for logger_name in noisy_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


@dataclass
class LogEntry:
    """One line held by the log sink."""

    id: int
    timestamp: float
    source: str
    message: str
    count: int = 1

    def to_dict(self) -> dict:
        return asdict(self)


class LogSink:
    """
    Shared log sink for engine output and manager events.

    Every component that has something to tell the operator calls
    add_log(source, message). Multi-line messages are split, consecutive
    duplicates are collapsed into a repeat count and the most recent entries
    are kept in a ring buffer. Each new line is also mirrored to the
    "llama_manager.sink" logger so it reaches the log file.

    Attributes:
        max_entries: Ring buffer capacity
    """

    def __init__(self, max_entries: int = DEFAULT_SINK_SIZE):
        self.max_entries = max_entries
        self._entries: Deque[LogEntry] = deque(maxlen=max_entries)
        self._next_id = 1
        self._logger = logging.getLogger(SINK_LOGGER_NAME)

    def add_log(self, source: str, message: str) -> None:
        for line in str(message).splitlines():
            line = line.rstrip()
            if not line:
                continue

            last = self._entries[-1] if self._entries else None
            if last is not None and last.source == source and last.message == line:
                last.count += 1
                last.timestamp = time.time()
                continue

            self._entries.append(
                LogEntry(
                    id=self._next_id,
                    timestamp=time.time(),
                    source=source,
                    message=line,
                )
            )
            self._next_id += 1
            self._logger.info(f"[{source}] {line}", extra={"source": source})

    def get_logs(
        self,
        source: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[dict]:
        """
        Return buffered entries, oldest first.

        Args:
            source: Only return entries from this source
            limit: Only return the most recent N entries
        """
        entries = [e for e in self._entries if source is None or e.source == source]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return [e.to_dict() for e in entries]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
