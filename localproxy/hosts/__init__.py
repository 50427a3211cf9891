"""Hosts file management."""

from .manager import HostsManager

__all__ = ['HostsManager']
