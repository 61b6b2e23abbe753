"""
Logging module for streamhub.

Every component logs through a child of the ``streamhub`` logger
(``streamhub.recorder``, ``streamhub.forwarder``, ...). Lines that concern a
single stream carry its path through ``get_stream_logger`` so console and
file output can be grepped per stream.
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional, Tuple


ROOT_LOGGER = 'streamhub'

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ('aiohttp.access', 'telethon')

RESET = "\033[0m"
DIM = "\033[90m"
STREAM_COLOR = "\033[96m"
LEVEL_COLORS = {
    logging.DEBUG: DIM,
    logging.INFO: "\033[92m",
    logging.WARNING: "\033[93m",
    logging.ERROR: "\033[91m",
    logging.CRITICAL: "\033[95m",
}


def record_context(record: logging.LogRecord) -> Tuple[str, Optional[str]]:
    """Component name (child logger suffix) and stream path of a record."""
    if record.name.startswith(ROOT_LOGGER + '.'):
        component = record.name[len(ROOT_LOGGER) + 1:]
    elif record.name == ROOT_LOGGER:
        component = 'app'
    else:
        component = record.name
    return component, getattr(record, 'stream', None)


class ConsoleFormatter(logging.Formatter):
    """Short colored lines: time, level, component, optional [stream]."""

    def format(self, record: logging.LogRecord) -> str:
        component, stream = record_context(record)
        color = LEVEL_COLORS.get(record.levelno, RESET)
        clock = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        parts = [
            f"{DIM}{clock}{RESET}",
            f"{color}{record.levelname:8}{RESET}",
            f"{DIM}{component:<10}{RESET}",
        ]
        if stream:
            parts.append(f"{STREAM_COLOR}[{stream}]{RESET}")
        parts.append(record.getMessage())

        text = ' '.join(parts)
        if record.exc_info:
            text += '\n' + self.formatException(record.exc_info)
        return text


class FileFormatter(logging.Formatter):
    """Pipe separated columns for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        component, stream = record_context(record)
        stamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')

        text = ' | '.join((
            stamp,
            f"{record.levelname:8}",
            f"{component:10}",
            f"{stream or '-':24}",
            record.getMessage(),
        ))
        if record.exc_info:
            text += '\n' + self.formatException(record.exc_info)
        return text


class StreamLoggerAdapter(logging.LoggerAdapter):
    """Attaches the stream path to every record as ``record.stream``."""

    def __init__(self, logger: logging.Logger, stream_path: str):
        super().__init__(logger, {'stream': stream_path})

    @property
    def stream_path(self) -> str:
        return self.extra['stream']

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        extra['stream'] = self.stream_path
        kwargs['extra'] = extra
        return msg, kwargs


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5,
    quiet: Iterable[str] = NOISY_LOGGERS
) -> logging.Logger:
    """
    Configure the ``streamhub`` logger tree.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_file: Path to log file. If None, logs only to console.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of backup log files to keep.
        quiet: Third-party loggers capped at WARNING.

    Returns:
        The root ``streamhub`` logger.
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8'
        )
        rotating.setFormatter(FileFormatter())
        root.addHandler(rotating)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Component logger, e.g. ``get_logger('recorder')``."""
    return logging.getLogger(f'{ROOT_LOGGER}.{name}' if name else ROOT_LOGGER)


def get_stream_logger(stream_path: str, name: Optional[str] = None) -> StreamLoggerAdapter:
    """Component logger bound to one stream path."""
    return StreamLoggerAdapter(get_logger(name), stream_path)
