"""Session schema - time-bounded grant bound to a device."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from veilguard.core.types import SessionState


class Session(BaseModel):
    """Persisted session record.
    
    ``version`` is bumped on every write and used for compare-and-set.
    """
    device_token: str = Field(..., description="Owning device token")
    state: SessionState = Field(default=SessionState.ACTIVE)
    created_at: datetime = Field(..., description="When the session was issued")
    expires_at: datetime = Field(..., description="Expiry instant")
    timeout_seconds: int = Field(..., gt=0, description="Timeout applied on refresh")
    last_activity_at: datetime = Field(..., description="Last request seen on this session")
    last_refreshed_at: Optional[datetime] = Field(default=None)
    refresh_count: int = Field(default=0, ge=0)
    version: int = Field(default=1, ge=1)


class SessionStatus(BaseModel):
    """Read-only view of a device's session."""
    device_token: str
    valid: bool
    state: Optional[SessionState] = None
    expires_at: Optional[datetime] = None
    ttl_seconds: int = 0
    last_activity_at: Optional[datetime] = None
    refresh_count: int = 0
