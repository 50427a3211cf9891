"""Port allocation for proxy listeners."""

from .manager import PortAllocator, check_port_connectivity, is_port_in_use
from .models import PortAllocation

__all__ = [
    'PortAllocator',
    'PortAllocation',
    'check_port_connectivity',
    'is_port_in_use',
]
