"""Logging setup for the aggregator.

Log records emitted while an operation runs carry the operation type and
log entry id, so JSON output can be correlated with the operation log.
"""

from __future__ import annotations
import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Tuple

_current_operation: ContextVar[Optional[Tuple[str, str]]] = ContextVar('current_operation', default=None)

# Attributes every LogRecord has; anything else was passed through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}

QUIET_LOGGERS = ('uvicorn.access', 'sqlalchemy.engine', 'apscheduler', 'aiohttp')


@contextmanager
def operation_context(operation: str, operation_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with an operation."""
    token = _current_operation.set((operation, operation_id))
    try:
        yield
    finally:
        _current_operation.reset(token)


class OperationContextFilter(logging.Filter):
    """Adds ``operation`` and ``operationId`` to records inside an operation."""

    def filter(self, record: logging.LogRecord) -> bool:
        current = _current_operation.get()
        if current is not None:
            record.operation, record.operationId = current
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, service_name: str = "maalfrid-aggregator"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": created.isoformat(timespec='milliseconds').replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        entry.update({key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS})

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter, coloured by level when writing to a terminal."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        operation = getattr(record, 'operation', None)
        scope = f" [{operation} {record.operationId}]" if operation else ""

        message = f"{timestamp} | {record.levelname:8} | {record.name}{scope} | {record.getMessage()}"
        if self.use_colors and record.levelname in self.COLORS:
            message = f"{self.COLORS[record.levelname]}{message}{self.RESET}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(
    level: str = "INFO",
    service_name: str = "maalfrid-aggregator",
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True
) -> None:
    """Configure the root logger.

    Args:
        level: Log level name
        service_name: Service name written to JSON records
        log_file: Optional file that receives JSON records
        use_json: JSON instead of plain console output
        use_colors: Colour console output when stdout is a terminal
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    context_filter = OperationContextFilter()

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler(sys.stdout)
    if use_json:
        console_handler.setFormatter(JSONFormatter(service_name))
    else:
        console_handler.setFormatter(ColoredFormatter(use_colors and sys.stdout.isatty()))
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter(service_name))
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
