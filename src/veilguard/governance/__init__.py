"""Governance - audit trail, review queue and retention."""

from veilguard.governance.audit import AuditLogger
from veilguard.governance.retention import RetentionPolicy, RetentionSweeper
from veilguard.governance.review import ReviewQueue

__all__ = [
    "AuditLogger",
    "RetentionPolicy",
    "RetentionSweeper",
    "ReviewQueue",
]
