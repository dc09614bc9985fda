"""API - HTTP surface of the trust layer.

    POST /v1/requests                                 inbound request flow
    GET  /v1/sessions/{token}                         session status
    POST /v1/sessions/{token}/refresh                 refresh a session
    GET  /v1/devices/{token}/score                    score a device
    POST /v1/rate-limits/check                        check an action
    POST /v1/rate-limits/record                       check and record an action
    POST /v1/admin/devices/{token}/revoke             revoke a device
    POST /v1/admin/devices/{token}/clear-suspicious   clear suspicion
    GET  /v1/admin/review-flags                       list review flags
    POST /v1/admin/review-flags/{flag_id}/resolve     close a review flag
"""

from veilguard.api.gateway import app
from veilguard.api.schemas import (
    ErrorResponse,
    RateLimitRequest,
    RateLimitResponse,
    RequestOutcomeResponse,
)

__all__ = [
    "app",
    "ErrorResponse",
    "RateLimitRequest",
    "RateLimitResponse",
    "RequestOutcomeResponse",
]
