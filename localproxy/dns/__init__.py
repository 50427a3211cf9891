"""Local DNS responder and resolver registration."""

from .resolver import PlatformResolver
from .server import DNSResponder

__all__ = ['DNSResponder', 'PlatformResolver']
