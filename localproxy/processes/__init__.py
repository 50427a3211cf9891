"""Dev server process supervision."""

from .manager import ProcessSupervisor

__all__ = ['ProcessSupervisor']
