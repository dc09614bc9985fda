"""Core types shared across components."""

from veilguard.core.types import (
    AuditEventType,
    ReviewStatus,
    RiskLevel,
    SessionState,
    Severity,
    SubjectType,
)

__all__ = [
    "AuditEventType",
    "ReviewStatus",
    "RiskLevel",
    "SessionState",
    "Severity",
    "SubjectType",
]
