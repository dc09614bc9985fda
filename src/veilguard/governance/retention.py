"""Retention sweep - time-based purge of audit and trust history.

Audit events are kept for a horizon that depends on their severity;
critical events are never purged. Open review flags are never purged
regardless of age.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Optional

from veilguard.common.constants import AuditConstants
from veilguard.common.time_utils import Clock, utc_now
from veilguard.core.types import AuditEventType, Severity
from veilguard.governance.audit.logger import AuditLogger
from veilguard.storage.base import TrustStore

logger = logging.getLogger(__name__)


def _default_event_retention() -> Dict[Severity, Optional[int]]:
    return {
        Severity.INFO: AuditConstants.RETENTION_DAYS_INFO,
        Severity.WARNING: AuditConstants.RETENTION_DAYS_WARNING,
        Severity.ERROR: AuditConstants.RETENTION_DAYS_ERROR,
        Severity.CRITICAL: AuditConstants.RETENTION_DAYS_CRITICAL,
    }


@dataclass
class RetentionPolicy:
    """Retention horizons in days. ``None`` keeps records indefinitely."""
    event_days: Dict[Severity, Optional[int]] = field(default_factory=_default_event_retention)
    closed_flag_days: int = AuditConstants.RETENTION_DAYS_CLOSED_FLAGS
    action_record_days: int = AuditConstants.RETENTION_DAYS_ACTION_RECORDS
    anomaly_score_days: int = AuditConstants.RETENTION_DAYS_ANOMALY_SCORES
    request_bucket_days: int = AuditConstants.RETENTION_DAYS_REQUEST_BUCKETS


class RetentionSweeper:
    """Periodic purge job."""
    
    def __init__(
        self,
        store: TrustStore,
        audit_logger: AuditLogger,
        policy: Optional[RetentionPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.audit_logger = audit_logger
        self.policy = policy or RetentionPolicy()
        self.clock = clock or utc_now
    
    def run(self) -> Dict[str, int]:
        """Purge everything past its horizon.
        
        Returns:
            Number of deleted records per kind
        """
        now = self.clock()
        policy = self.policy
        results: Dict[str, int] = {}
        
        for severity, days in policy.event_days.items():
            if days is None:
                continue
            results[f"events_{severity.value}"] = self.store.purge_audit_events(
                severity, now - timedelta(days=days)
            )
        
        results["closed_flags"] = self.store.purge_closed_flags(
            now - timedelta(days=policy.closed_flag_days)
        )
        results["action_records"] = self.store.purge_action_records(
            now - timedelta(days=policy.action_record_days)
        )
        results["anomaly_scores"] = self.store.purge_anomaly_scores(
            now - timedelta(days=policy.anomaly_score_days)
        )
        results["request_buckets"] = self.store.purge_request_buckets(
            now - timedelta(days=policy.request_bucket_days)
        )
        
        total = sum(results.values())
        logger.info(f"Retention sweep deleted {total} records: {results}")
        self.audit_logger.log(
            AuditEventType.SYSTEM_EVENT,
            Severity.INFO,
            details={"operation": "retention_sweep", "deleted": results},
        )
        return results
