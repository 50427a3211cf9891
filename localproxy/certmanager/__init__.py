"""Certificate management for TLS listeners."""

from .manager import CertificateManager
from .models import SSLMaterial

__all__ = ['CertificateManager', 'SSLMaterial']
