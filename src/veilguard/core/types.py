"""Core type definitions for Veilguard."""

from enum import Enum


class Severity(str, Enum):
    """Severity of an audit event."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    """Coarse risk band derived from a numeric anomaly score."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class SessionState(str, Enum):
    """Lifecycle states of a device session."""
    ACTIVE = "ACTIVE"      # now < expires_at, device not revoked
    EXPIRED = "EXPIRED"    # now >= expires_at
    REVOKED = "REVOKED"    # terminal, forced by device revocation


class ReviewStatus(str, Enum):
    """Disposition of a review flag."""
    PENDING = "pending"
    REVIEWED = "reviewed"
    DISMISSED = "dismissed"
    ACTIONED = "actioned"

    @property
    def is_open(self) -> bool:
        return self == ReviewStatus.PENDING


class SubjectType(str, Enum):
    """Kinds of entity a review flag can point at."""
    DEVICE = "device"
    PERSONA = "persona"


class AuditEventType(str, Enum):
    """Types of security-relevant audit events."""
    DEVICE_CREATED = "device_created"
    IP_CHANGED = "ip_changed"
    USER_AGENT_CHANGED = "user_agent_changed"
    PERSONA_LINKED = "persona_linked"
    PERSONA_LINK_CONFLICT = "persona_link_conflict"
    FAILED_AUTH = "failed_auth"
    DEVICE_MARKED_SUSPICIOUS = "device_marked_suspicious"
    SUSPICIOUS_CLEARED = "suspicious_cleared"
    DEVICE_REVOKED = "device_revoked"
    DEVICE_UNBANNED = "device_unbanned"
    DEVICE_ROTATED = "device_rotated"
    SESSION_INITIALIZED = "session_initialized"
    SESSION_REFRESHED = "session_refreshed"
    SESSION_EXPIRED = "session_expired"
    REVOKED_DEVICE_ACCESS_ATTEMPT = "revoked_device_access_attempt"
    EXPIRED_SESSION_ACCESS_ATTEMPT = "expired_session_access_attempt"
    SUSPICIOUS_DEVICE_ACCESS = "suspicious_device_access"
    ANOMALY_DETECTED = "anomaly_detected"
    RATE_LIMIT_DENIED = "rate_limit_denied"
    CHURN_FLAGGED = "churn_flagged"
    REVIEW_FLAG_RESOLVED = "review_flag_resolved"
    SYSTEM_EVENT = "system_event"
