"""Structured request logging for the forwarding engine.

structlog is configured to render through the standard library handlers set
up by :mod:`localproxy.shared.python_logger_config`, so access events land
in the same console stream as the rest of the process output.
"""

import logging
import os
from typing import Any, Optional

import structlog
from structlog.processors import TimeStamper
from structlog.stdlib import BoundLogger

_configured = False


def configure_logging(log_format: Optional[str] = None) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        log_format: ``console`` (default) or ``json``; falls back to LOG_FORMAT
    """
    global _configured

    log_format = (log_format or os.getenv('LOG_FORMAT', 'console')).lower()

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == 'json':
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str) -> BoundLogger:
    """Get a structured logger for a module."""
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)


def log_request(logger: BoundLogger, method: str, path: str, **context: Any) -> None:
    """Emit the access event for an inbound request."""
    logger.debug("Proxy request received", method=method, path=path, **context)


def log_response(logger: BoundLogger, status: int, duration_ms: float, **context: Any) -> None:
    """Emit the access event for a relayed response."""
    level = logging.WARNING if status >= 500 else logging.INFO
    logger.log(level, "Proxy response relayed", status=status, duration_ms=round(duration_ms, 2), **context)
