"""Shutdown coordination across all proxy subsystems."""

from .coordinator import CleanupReport, LifecycleCoordinator

__all__ = ['CleanupReport', 'LifecycleCoordinator']
