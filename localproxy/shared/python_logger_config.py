"""Python logging configuration for localproxy.

Console output for every component, with an extra TRACE level below DEBUG
for wire-level detail (DNS datagrams, raw probe results).

Environment Variables:
    LOG_LEVEL: Logging level (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL)
    PYTHON_LOG_FORMAT: Log message format (default: see below)
"""

import logging
import os
import sys
from typing import Optional

TRACE = 5

ROOT_LOGGER_NAME = 'localproxy'

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _install_trace_level() -> int:
    logging.addLevelName(TRACE, "TRACE")

    def trace(self, message, *args, **kwargs):
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs)

    logging.Logger.trace = trace
    return TRACE


_install_trace_level()


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        'TRACE': '\033[90m',     # Dark gray
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        msg = super().format(record)
        color = self.COLORS.get(record.levelname, '')
        if color:
            msg = f"{color}{msg}{self.RESET}"
        return msg


def resolve_level(log_level: str) -> int:
    """Map a level name (including TRACE) to its numeric value."""
    log_level = log_level.upper()
    if log_level == 'TRACE':
        return TRACE
    return getattr(logging, log_level, logging.INFO)


def setup_python_logging(
    log_level: Optional[str] = None,
    use_colors: bool = True,
    log_format: Optional[str] = None
) -> logging.Logger:
    """Configure console logging for the process.

    Args:
        log_level: Logging level (if None, reads LOG_LEVEL)
        use_colors: Whether to use colored output for TTY
        log_format: Custom log format (if None, reads PYTHON_LOG_FORMAT)

    Returns:
        The configured ``localproxy`` logger
    """
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO')
    if log_format is None:
        log_format = os.getenv('PYTHON_LOG_FORMAT', DEFAULT_FORMAT)

    level = resolve_level(log_level)

    # Remove any existing handlers to avoid duplicates
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    if use_colors and sys.stdout.isatty():
        console_handler.setFormatter(ColoredFormatter(log_format))
    else:
        console_handler.setFormatter(logging.Formatter(log_format))

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(level)

    silence_noisy_loggers()
    package_logger.debug(f"Python logging configured: level={log_level.upper()}")
    return package_logger


def set_verbose(verbose: bool) -> None:
    """Raise the package logger to DEBUG when verbose output is requested."""
    if verbose:
        logging.getLogger(ROOT_LOGGER_NAME).setLevel(logging.DEBUG)


def silence_noisy_loggers():
    """Reduce verbosity of chatty third-party loggers."""
    for logger_name in ('asyncio', 'httpx', 'httpcore', 'hpack', 'h2', 'hypercorn.access'):
        logging.getLogger(logger_name).setLevel(logging.WARNING)
