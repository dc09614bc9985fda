"""Device schema - identity anchor for an unauthenticated client."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class Device(BaseModel):
    """Device entity schema.
    
    Keyed by the client-supplied device token. Counters are only ever
    changed through the store's atomic primitives. ``is_revoked`` is
    terminal until an explicit unban.
    """
    device_token: str = Field(..., description="Opaque client-generated token")
    first_seen_at: datetime = Field(..., description="First request bearing this token")
    last_seen_at: datetime = Field(..., description="Most recent request")
    request_count: int = Field(default=0, ge=0, description="Monotonic request counter")
    failed_auth_count: int = Field(default=0, ge=0, description="Failed authentication counter")
    last_failed_auth_at: Optional[datetime] = Field(default=None)
    is_suspicious: bool = Field(default=False, description="Cached suspicion flag")
    is_revoked: bool = Field(default=False, description="Terminal revocation flag")
    revoked_at: Optional[datetime] = Field(default=None)
    revoked_reason: Optional[str] = Field(default=None)
    fingerprint: Optional[str] = Field(default=None, description="Secondary correlation key")
    ip_address: Optional[str] = Field(default=None, description="Last seen source IP")
    user_agent: Optional[str] = Field(default=None, description="Last seen user agent")
    active_persona_id: Optional[str] = Field(
        default=None, description="Persona this device may write as"
    )
    session_timeout_hours: Optional[int] = Field(
        default=None, gt=0, description="Per-device session timeout override"
    )
    
    model_config = {
        "json_schema_extra": {
            "example": {
                "device_token": "6f1c2a9e-4b7d-4e1a-9c3f-0d2b8e7a5c41",
                "first_seen_at": "2026-03-02T10:30:00Z",
                "last_seen_at": "2026-03-02T11:05:12Z",
                "request_count": 42,
                "failed_auth_count": 0,
                "is_suspicious": False,
                "is_revoked": False,
                "ip_address": "203.0.113.7",
                "user_agent": "VeilApp/3.1 (iOS 17.4)",
            }
        }
    }


class PersonaLink(BaseModel):
    """Association between a device and a persona it can reach."""
    device_token: str = Field(..., description="Linked device token")
    persona_id: str = Field(..., description="Linked persona identifier")
    linked_at: datetime = Field(..., description="When the link was created")
