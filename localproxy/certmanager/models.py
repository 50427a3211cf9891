"""Certificate data models."""

from typing import List, Optional

from pydantic import BaseModel, Field


class SSLMaterial(BaseModel):
    """PEM key, certificate and optional CA served by a TLS listener."""
    key: bytes
    cert: bytes
    ca: Optional[bytes] = None
    key_path: Optional[str] = None
    cert_path: Optional[str] = None
    ca_path: Optional[str] = None
    domains: List[str] = Field(default_factory=list, description="Names the certificate was issued for")

    @property
    def cert_chain(self) -> bytes:
        """Leaf certificate followed by the CA, as presented to clients."""
        chain = self.cert
        if self.ca and self.ca not in chain:
            if not chain.endswith(b'\n'):
                chain += b'\n'
            chain += self.ca
        return chain
