"""Rate limiting - table-driven action limits and churn detection."""

from veilguard.ratelimit.churn import ChurnDetector, churn_severity
from veilguard.ratelimit.limiter import ActionRateLimiter
from veilguard.ratelimit.policies import (
    CheckKind,
    CheckScope,
    PolicyCheck,
    PolicyContext,
    RateLimitPolicy,
    RateLimitPolicySet,
    load_policies,
)

__all__ = [
    "ActionRateLimiter",
    "CheckKind",
    "CheckScope",
    "ChurnDetector",
    "PolicyCheck",
    "PolicyContext",
    "RateLimitPolicy",
    "RateLimitPolicySet",
    "churn_severity",
    "load_policies",
]
