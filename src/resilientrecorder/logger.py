"""
Logging module for Resilient Stream Recorder.
Provides structured logging with file rotation and colored console output.

Records carry two optional context fields: ``session`` (recording session
id) and ``segment`` (capture attempt index). The component is taken from
the child logger name, e.g. ``resilient_recorder.capture`` -> ``capture``.
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


ROOT_LOGGER = 'resilient_recorder'


# ANSI color codes for console output
class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def component_of(record: logging.LogRecord) -> str:
    """Short component name of a record, '' for the root application logger."""
    prefix = ROOT_LOGGER + '.'
    if record.name.startswith(prefix):
        return record.name[len(prefix):]
    return ''


def context_of(record: logging.LogRecord) -> str:
    """Session context as ``<session>`` or ``<session>#<segment>``."""
    session = getattr(record, 'session', None)
    if not session:
        return ''
    segment = getattr(record, 'segment', None)
    return f"{session}#{segment}" if segment is not None else str(session)


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GRAY,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.MAGENTA,
    }

    def format(self, record: logging.LogRecord) -> str:
        # Add color to level name
        color = self.LEVEL_COLORS.get(record.levelno, Colors.RESET)

        # Format timestamp
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # Component and session tags, both optional
        component = component_of(record)
        component_str = f"{Colors.BLUE}{component}{Colors.RESET} " if component else ""
        context = context_of(record)
        context_str = f"{Colors.CYAN}[{context}]{Colors.RESET} " if context else ""

        # Build message
        level_str = f"{color}{record.levelname:8}{Colors.RESET}"
        message = (
            f"{Colors.GRAY}{timestamp}{Colors.RESET} {level_str} "
            f"{component_str}{context_str}{record.getMessage()}"
        )

        # Add exception info if present
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


class FileFormatter(logging.Formatter):
    """Plain formatter for file output, one pipe-separated line per record."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        component = component_of(record) or '-'
        context = context_of(record) or '-'

        message = (
            f"{timestamp} | {record.levelname:8} | {component:12} | "
            f"{context:18} | {record.getMessage()}"
        )

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds recording session context to log messages."""

    def __init__(self, logger: logging.Logger, session_id: str, segment: Optional[int] = None):
        super().__init__(logger, {'session': session_id, 'segment': segment})

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {})
        kwargs['extra'].update(self.extra)
        return msg, kwargs

    def for_segment(self, index: int) -> 'SessionLoggerAdapter':
        """Same session, tagged with a capture attempt index."""
        return SessionLoggerAdapter(self.logger, self.extra['session'], index)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5
) -> logging.Logger:
    """
    Set up the main application logger.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_file: Path to log file. If None, logs only to console.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of backup log files to keep.

    Returns:
        Configured logger instance.
    """
    # Create logger
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers, closing the rotating file from a previous run
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Console handler with colors
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColoredFormatter())
    console_handler.setLevel(logging.DEBUG)
    logger.addHandler(console_handler)

    # File handler with rotation
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(FileFormatter())
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get the application logger.

    Args:
        name: Optional name for child logger.

    Returns:
        Logger instance.
    """
    if name:
        return logging.getLogger(f'{ROOT_LOGGER}.{name}')
    return logging.getLogger(ROOT_LOGGER)


def get_session_logger(session_id: str, name: Optional[str] = None) -> SessionLoggerAdapter:
    """
    Get a logger adapter for a specific recording session.

    Args:
        session_id: Recording session identifier.
        name: Optional child logger name.

    Returns:
        SessionLoggerAdapter with session context.
    """
    return SessionLoggerAdapter(get_logger(name), session_id)


if __name__ == '__main__':
    # Test logging
    logger = setup_logging(level="DEBUG", log_file="./logs/test.log")

    logger.debug("Debug message")
    logger.info("Info message")
    logger.warning("Warning message")

    # Test session logger
    session_logger = get_session_logger("1700000000000", "orchestrator")
    session_logger.info("Recording session started")
    session_logger.for_segment(3).warning("Capture failed (failed_fast)")
