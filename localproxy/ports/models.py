"""Port allocation records."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class PortAllocation(BaseModel):
    """A port this process currently owns."""
    port: int = Field(..., ge=1, le=65535, description="Port number")
    bind_address: str = Field(..., description="Address the port was probed on")
    connectivity_verified: bool = Field(False, description="Whether a real connection to the port succeeded")
    purpose: Optional[str] = Field(None, description="What the port is used for, e.g. 'https' or 'redirect'")
    allocated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
