"""Logging configuration for the Course Content Engine.

Provides structured logging with:
- File rotation (10MB, 5 backups)
- Console handler on stderr, colored when attached to a terminal
- JSON file output for log shipping
- Correlated spans carried across asyncio tasks
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Optional

ROOT_LOGGER = 'course_engine'

# Field names copied from records into JSON output when present
_EXTRA_FIELDS = ('span_id', 'parent_span_id', 'span_name', 'span_fields', 'details')

CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(span_label)s%(message)s"


@dataclass(frozen=True)
class Span:
    """A unit of work correlated across log records."""
    name: str
    span_id: str
    parent_id: Optional[str] = None
    fields: dict = field(default_factory=dict)


_current_span: contextvars.ContextVar[Optional[Span]] = contextvars.ContextVar(
    'course_engine_span', default=None
)


def current_span() -> Optional[Span]:
    """Return the span active in the current task, if any."""
    return _current_span.get()


class SpanFilter(logging.Filter):
    """Attach the active span to every record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        span = _current_span.get()
        if span is not None:
            record.span_id = span.span_id
            record.parent_span_id = span.parent_id
            record.span_name = span.name
            record.span_fields = span.fields
            record.span_label = f"[{span.name} {span.span_id[:8]}] "
        else:
            record.span_label = ""
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record, span fields included."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update({
            name: getattr(record, name) for name in _EXTRA_FIELDS if hasattr(record, name)
        })
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors the level name on a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[41m',
    }
    RESET = '\033[0m'

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None,
                 stream=None):
        super().__init__(fmt, datefmt)
        self.stream = stream or sys.stderr

    def format(self, record: logging.LogRecord) -> str:
        isatty = getattr(self.stream, 'isatty', None)
        if not (isatty and isatty()):
            return super().format(record)
        colored = logging.makeLogRecord(record.__dict__)
        color = self.LEVEL_COLORS.get(record.levelno, '')
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


def _console_handler(span_filter: SpanFilter) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(span_filter)
    handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt='%H:%M:%S', stream=sys.stderr))
    return handler


def _file_handler(log_file: str, span_filter: SpanFilter, json_format: bool,
                  max_bytes: int, backup_count: int) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )
    handler.addFilter(span_filter)
    handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(FILE_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False,
    console: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> logging.Logger:
    """Configure the ``course_engine`` logger tree.

    Calling it again replaces the previous handlers.

    Args:
        level: Threshold for the whole tree (DEBUG, INFO, WARNING, ...)
        log_file: Optional rotating log file; parent directories are created
        json_format: Write the file as JSON lines instead of plain text
        console: Also log to stderr
        max_bytes: Rotate the file once it grows past this size
        backup_count: Rotated files to keep

    Returns:
        The ``course_engine`` logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    span_filter = SpanFilter()
    if console:
        logger.addHandler(_console_handler(span_filter))
    if log_file:
        logger.addHandler(_file_handler(log_file, span_filter, json_format, max_bytes, backup_count))

    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Child logger ``course_engine.<name>``, e.g. ``get_logger('cache')``."""
    return logging.getLogger(f'{ROOT_LOGGER}.{name}')


@contextmanager
def trace_span(name: str, logger: Optional[logging.Logger] = None,
               **fields) -> Generator[Span, None, None]:
    """Open a span for the enclosed block.

    Span ids are uuid4 hex strings, so two concurrent loads of the same
    resource never share an id. The span is bound to the current context,
    which asyncio copies into every task created inside the block.

    Example:
        with trace_span('load_course', logger, course_id=course_id):
            ...
    """
    parent = _current_span.get()
    span = Span(
        name=name,
        span_id=uuid.uuid4().hex,
        parent_id=parent.span_id if parent else None,
        fields=fields,
    )
    token = _current_span.set(span)
    started = time.perf_counter()
    if logger is not None:
        logger.debug(f"span start: {name}")
    try:
        yield span
    except BaseException:
        if logger is not None:
            elapsed = (time.perf_counter() - started) * 1000
            logger.debug(f"span failed: {name} ({elapsed:.1f}ms)")
        raise
    else:
        if logger is not None:
            elapsed = (time.perf_counter() - started) * 1000
            logger.debug(f"span end: {name} ({elapsed:.1f}ms)")
    finally:
        _current_span.reset(token)


def log_exception(logger: logging.Logger, exc: Exception,
                  message: str = "Operation failed",
                  level: int = logging.ERROR) -> None:
    """Log ``exc`` with its traceback and, for engine errors, its details."""
    details = getattr(exc, 'details', None)
    extra = {'details': details} if details else {}
    logger.log(level, f"{message}: {exc}", exc_info=exc, extra=extra)
