"""Shared utilities for localproxy."""

from . import python_logger_config  # noqa: F401  installs the TRACE level
from .config import Config, get_config
from .utils import is_loopback_domain

__all__ = ['Config', 'get_config', 'is_loopback_domain']
