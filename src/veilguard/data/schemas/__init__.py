"""Data schemas - canonical Pydantic definitions."""

from veilguard.data.schemas.device import Device, PersonaLink
from veilguard.data.schemas.session import Session, SessionStatus
from veilguard.data.schemas.audit_event import AuditEvent
from veilguard.data.schemas.anomaly import AnomalyScore, FeatureSet
from veilguard.data.schemas.rate_limit import (
    ActionLedger,
    ActionRecord,
    ChurnStats,
    LedgerEntry,
    RateLimitDecision,
)
from veilguard.data.schemas.review_flag import ReviewFlag

__all__ = [
    "Device",
    "PersonaLink",
    "Session",
    "SessionStatus",
    "AuditEvent",
    "AnomalyScore",
    "FeatureSet",
    "ActionLedger",
    "ActionRecord",
    "ChurnStats",
    "LedgerEntry",
    "RateLimitDecision",
    "ReviewFlag",
]
