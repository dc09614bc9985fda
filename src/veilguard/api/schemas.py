"""API Schemas - Request/Response models for the trust gateway.
"""

from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from veilguard.core.types import RiskLevel, SessionState


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class InboundRequest(BaseModel):
    """Optional body for POST /v1/requests."""
    ip_address: Optional[str] = Field(
        default=None, description="Client IP, overrides X-Forwarded-For"
    )
    fingerprint: Optional[str] = Field(
        default=None, description="Secondary device correlation key"
    )


class RateLimitRequest(BaseModel):
    """Body for the rate-limit check and record endpoints."""
    actor_id: str = Field(..., min_length=1, description="Persona performing the action")
    target_id: Optional[str] = Field(default=None, description="Target of the action")
    action_type: str = Field(..., min_length=1, description="Rate-limited action type")
    device_token: Optional[str] = Field(
        default=None, description="Actor's device; its risk band tightens limits"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "actor_id": "persona_u1",
                "target_id": "persona_u2",
                "action_type": "follow",
                "device_token": "abc-1",
            }
        }
    }


class RevokeRequest(BaseModel):
    """Body for POST /v1/admin/devices/{token}/revoke."""
    reason: str = Field(..., min_length=1, description="Why the device is revoked")
    actor_id: Optional[str] = Field(default=None, description="Administrator id")


class ClearSuspiciousRequest(BaseModel):
    """Body for POST /v1/admin/devices/{token}/clear-suspicious."""
    actor_id: Optional[str] = Field(default=None, description="Administrator id")


class ResolveFlagRequest(BaseModel):
    """Body for POST /v1/admin/review-flags/{flag_id}/resolve."""
    status: Literal["reviewed", "dismissed", "actioned"] = Field(
        ..., description="Closing review status"
    )
    reviewer_id: str = Field(..., min_length=1)
    notes: Optional[str] = Field(default=None, max_length=2000)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class RequestOutcomeResponse(BaseModel):
    """Response for POST /v1/requests."""
    device_token: str
    persona_ids: List[str] = Field(default_factory=list)
    session_valid: bool = Field(
        ..., description="False means the request is treated as anonymous"
    )
    session_state: Optional[SessionState] = None
    expires_at: Optional[datetime] = None
    refreshed: bool = False
    is_suspicious: bool = False
    risk_level: Optional[RiskLevel] = Field(
        default=None, description="Set when this request triggered scoring"
    )


class RefreshResponse(BaseModel):
    """Response for POST /v1/sessions/{token}/refresh."""
    device_token: str
    expires_at: datetime


class ScoreResponse(BaseModel):
    """Response for GET /v1/devices/{token}/score."""
    device_token: str
    score: int = Field(..., ge=0, le=100)
    risk_level: RiskLevel
    reasons: List[str] = Field(default_factory=list)
    created_at: datetime

    model_config = {
        "json_schema_extra": {
            "example": {
                "device_token": "abc-1",
                "score": 90,
                "risk_level": "critical",
                "reasons": ["very_high_failed_auth_rate", "failed_auth_burst", "previously_marked_suspicious"],
                "created_at": "2026-01-28T14:30:05Z",
            }
        }
    }


class RateLimitResponse(BaseModel):
    """Rate-limit decision."""
    allowed: bool
    action_type: str
    reason: Optional[str] = None
    code: Optional[str] = None
    remaining: Optional[int] = None
    retry_after_seconds: Optional[float] = None


class AdminActionResponse(BaseModel):
    """Response for administrative device operations."""
    device_token: str
    changed: bool = Field(..., description="False when the operation was a no-op")


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    code: Optional[str] = Field(
        default=None, description="Machine-checkable policy code"
    )
    request_id: Optional[str] = Field(
        default=None, description="Request ID for debugging"
    )
