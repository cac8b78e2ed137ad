"""
Logging setup for tablebatch.

While a batch is being executed, every log line carries its id (the
multipart boundary of the batch request), so client and emulator output
for one transaction can be lined up. Credentials that can show up in
request dumps are redacted before any handler writes a record.
"""

import json
import logging
import logging.handlers
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, TextIO

# Id of the batch being executed in the current context
correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "***REDACTED***"

_SIZE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(B|KB|MB|GB)?\s*$", re.IGNORECASE)
_UNITS = {"B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3}


class SensitiveDataFilter(logging.Filter):
    """
    Redacts storage credentials from log records.

    The message is rendered with its arguments before matching, so secrets
    passed as ``%s`` arguments are caught as well.
    """

    PATTERNS = [
        # Shared Key, Shared Key Lite and bearer credentials
        re.compile(r"(Authorization:\s+)(?:SharedKey(?:Lite)?\s+|Bearer\s+)?\S+", re.IGNORECASE),
        # Connection string secrets
        re.compile(r"(AccountKey=)[^;]+", re.IGNORECASE),
        re.compile(r"(SharedAccessSignature=)[^;&]+", re.IGNORECASE),
        # SAS signature query parameter
        re.compile(r"(sig=)[^;&\s]+", re.IGNORECASE),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True

    @classmethod
    def redact(cls, text: str) -> str:
        for pattern in cls.PATTERNS:
            text = pattern.sub(r"\g<1>" + REDACTED, text)
        return text


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        batch_id = correlation_id.get()
        if batch_id:
            log_data["correlation_id"] = batch_id

        context = getattr(record, "context", None)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines, suffixed with ``[<batch id>]`` while a batch runs."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def formatMessage(self, record: logging.LogRecord) -> str:
        text = super().formatMessage(record)
        batch_id = correlation_id.get()
        return f"{text} [{batch_id}]" if batch_id else text


def setup_logging(
    level: str = "INFO",
    format_type: str = "json",
    log_file: Optional[str] = None,
    rotation_size: str = "10MB",
    rotation_count: int = 5,
    module_levels: Optional[Dict[str, str]] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure the root logger.

    Replaces any handlers already installed. Output goes to ``stream``
    (stdout by default) and, when ``log_file`` is set, to a size-rotated
    file as well.

    Args:
        level: Root log level name
        format_type: "json" or "text"
        log_file: Optional log file path; parent directories are created
        rotation_size: Rotate the file at this size, e.g. "10MB"
        rotation_count: Rotated files to keep
        module_levels: Per-logger levels, e.g. {"tablebatch.table.service": "DEBUG"}
        stream: Console stream; commands that print results to stdout log to stderr
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    formatter = JSONFormatter() if format_type == "json" else TextFormatter()

    handlers: list = [logging.StreamHandler(stream or sys.stdout)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            filename=path,
            maxBytes=_parse_size(rotation_size),
            backupCount=rotation_count,
            encoding="utf-8",
        ))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(SensitiveDataFilter())
        root_logger.addHandler(handler)

    for name, module_level in (module_levels or {}).items():
        logging.getLogger(name).setLevel(getattr(logging, module_level.upper()))

    root_logger.debug(
        f"Logging configured: level={level}, format={format_type}, "
        f"file={log_file or '-'}, module levels={module_levels or {}}"
    )


def _parse_size(size: str) -> int:
    """Parse a size such as "10MB" or "1.5 GB" into bytes. A bare number is bytes."""
    match = _SIZE.match(size)
    if not match:
        raise ValueError(f"Invalid size '{size}'")
    number, unit = match.groups()
    return int(float(number) * _UNITS[(unit or "B").upper()])


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module."""
    return logging.getLogger(name)


@contextmanager
def batch_context(batch_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``batch_id``."""
    token = correlation_id.set(batch_id)
    try:
        yield
    finally:
        correlation_id.reset(token)


def log_with_context(logger: logging.Logger, level: int, message: str, **context: Any) -> None:
    """Log ``message`` with keyword context attached as ``record.context``."""
    extra = {"context": context} if context else {}
    logger.log(level, message, extra=extra)
