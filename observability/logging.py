"""Logging setup for the KBCrawl API and worker processes.

Console output is human-readable by default and JSON lines when
``LOG_FORMAT=json``. File output is always JSON. Crawl code logs through
``logging.getLogger(__name__)``; queue handlers use ``get_job_logger`` so
every record carries the job id.
"""

from __future__ import annotations

import functools
import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional, Tuple

# Present on every LogRecord; anything else arrived through `extra`
_STANDARD_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord('', logging.INFO, '', 0, '', (), None))
) | {'message', 'asctime'}

# Extras shown inline on console lines, in this order
_CONSOLE_CONTEXT_FIELDS = ('job_id', 'knowledge_base_id', 'topic', 'attempt')

_NOISY_LOGGERS = ('uvicorn.access', 'apscheduler', 'trafilatura', 'htmldate', 'courlan', 'urllib3', 'httpx')


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _STANDARD_RECORD_FIELDS and not key.startswith('_')
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with extras flattened into the object."""

    def __init__(self, service_name: str = "kbcrawl"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec='milliseconds').replace("+00:00", "Z"),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        entry.update(_record_extras(record))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Single-line console format with job context appended."""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[2m',      # Dim
        logging.INFO: '\033[32m',      # Green
        logging.WARNING: '\033[33m',   # Yellow
        logging.ERROR: '\033[31m',     # Red
        logging.CRITICAL: '\033[1;31m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        level = record.levelname.ljust(7)
        if self.use_colors and record.levelno in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelno]}{level}{self.RESET}"

        line = f"{clock} {level} {record.name}: {record.getMessage()}"

        context = [f"{key}={getattr(record, key)}" for key in _CONSOLE_CONTEXT_FIELDS
                   if getattr(record, key, None) not in (None, '')]
        if context:
            line = f"{line} [{' '.join(context)}]"

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    level: str = "INFO",
    service_name: str = "kbcrawl",
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True
) -> None:
    """Replace root handlers with a console handler and an optional JSON file handler.

    Args:
        level: Root log level name
        service_name: Value of the ``service`` field in JSON output
        log_file: Also write JSON lines to this path
        use_json: JSON on the console instead of the readable format
        use_colors: Color level names when the console is a TTY
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONFormatter(service_name) if use_json else ColoredFormatter(use_colors))
    root.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(JSONFormatter(service_name))
        root.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging_from_env(service_name: str) -> None:
    """Configure logging from LOG_LEVEL, LOG_FORMAT and LOG_FILE."""
    setup_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        service_name=service_name,
        log_file=os.getenv("LOG_FILE") or None,
        use_json=os.getenv("LOG_FORMAT", "").lower() == "json"
    )


class JobLoggerAdapter(logging.LoggerAdapter):
    """Adds bound job context to every record, merged with per-call extras."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs['extra'] = {**(self.extra or {}), **(kwargs.get('extra') or {})}
        return msg, kwargs


def get_job_logger(name: str, job_id: str, **context) -> JobLoggerAdapter:
    """Logger bound to a queue job id plus any extra context fields."""
    return JobLoggerAdapter(logging.getLogger(name), {'job_id': job_id, **context})


def log_duration(logger_name: Optional[str] = None, threshold_ms: float = 1000.0):
    """Warn when the decorated coroutine runs longer than ``threshold_ms``."""
    def decorator(func):
        log = logging.getLogger(logger_name or func.__module__)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.monotonic()
            try:
                return await func(*args, **kwargs)
            finally:
                elapsed_ms = (time.monotonic() - started) * 1000
                if elapsed_ms > threshold_ms:
                    log.warning(f"{func.__qualname__} took {elapsed_ms:.0f}ms",
                                extra={"duration_ms": round(elapsed_ms, 1)})

        return wrapper
    return decorator
