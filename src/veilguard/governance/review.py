"""Review Queue - durable flags for human disposition.

Flags are raised by the anomaly detector and the churn sweep. A subject
has at most one open (pending) flag at a time; re-flagging an already
pending subject returns the existing flag. Reviewers close flags as
reviewed, dismissed or actioned.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from veilguard.common.constants import DataConstants
from veilguard.common.exceptions import NotFoundError, ValidationError
from veilguard.common.time_utils import Clock, utc_now
from veilguard.core.types import AuditEventType, ReviewStatus, RiskLevel, Severity, SubjectType
from veilguard.data.schemas import ReviewFlag
from veilguard.governance.audit.logger import AuditLogger
from veilguard.storage.base import TrustStore

logger = logging.getLogger(__name__)


FlagCallback = Callable[[ReviewFlag], None]


class ReviewQueue:
    """Collects flagged subjects and records reviewer decisions."""
    
    def __init__(
        self,
        store: TrustStore,
        audit_logger: AuditLogger,
        clock: Optional[Clock] = None,
        on_flag: Optional[FlagCallback] = None,
    ):
        """Initialize review queue.
        
        Args:
            store: Trust store holding flags
            audit_logger: Audit logger for reviewer actions
            clock: Time source
            on_flag: Notification callback invoked once per newly created flag
        """
        self.store = store
        self.audit_logger = audit_logger
        self.clock = clock or utc_now
        self.on_flag = on_flag
    
    def flag_for_review(
        self,
        subject_id: str,
        subject_type: SubjectType,
        severity: RiskLevel,
        reason: str,
        stats: Optional[Dict[str, Any]] = None,
    ) -> Tuple[ReviewFlag, bool]:
        """Flag a subject unless it already has a pending flag.
        
        Args:
            subject_id: Device token or persona id
            subject_type: Kind of subject
            severity: Risk band that triggered the flag
            reason: Short machine-readable reason (e.g. "anomaly_detected")
            stats: Snapshot of the statistics behind the decision
            
        Returns:
            Tuple of (open flag, True if this call created it)
        """
        candidate = ReviewFlag(
            subject_id=subject_id,
            subject_type=subject_type,
            severity=severity,
            reason=reason,
            flagged_at=self.clock(),
            stats_snapshot=stats or {},
        )
        flag, created = self.store.create_flag_if_no_open(candidate)
        
        if not created:
            logger.debug(f"{subject_type.value} {subject_id} already pending review ({flag.flag_id})")
            return flag, False
        
        logger.info(
            f"Flagged {subject_type.value} {subject_id} for review: "
            f"{reason} ({severity.value}) -> {flag.flag_id}"
        )
        if self.on_flag is not None:
            try:
                self.on_flag(flag)
            except Exception:
                # The flag is already durable; a failing notifier must not undo it.
                logger.exception(f"Review notification failed for {flag.flag_id}")
        return flag, True
    
    def resolve_flag(
        self,
        flag_id: str,
        status: ReviewStatus,
        reviewer_id: str,
        notes: Optional[str] = None,
    ) -> ReviewFlag:
        """Close a pending flag.
        
        Args:
            flag_id: Flag to close
            status: reviewed, dismissed or actioned
            reviewer_id: Reviewer identifier
            notes: Optional reviewer notes
            
        Returns:
            The closed flag
            
        Raises:
            ValidationError: If status is pending or the flag is already closed
            NotFoundError: If the flag does not exist
        """
        if status.is_open:
            raise ValidationError("A flag cannot be resolved to pending", {"flag_id": flag_id})
        
        flag = self.store.get_flag(flag_id)
        if flag is None:
            raise NotFoundError(f"Review flag not found: {flag_id}", "review_flag", flag_id)
        
        closed = flag.model_copy(update={
            "review_status": status,
            "reviewed_by": reviewer_id,
            "reviewed_at": self.clock(),
            "review_notes": notes,
        })
        if not self.store.close_flag(closed):
            raise ValidationError(
                f"Review flag {flag_id} is already {flag.review_status.value}",
                {"flag_id": flag_id, "review_status": flag.review_status.value},
            )
        
        is_device = flag.subject_type == SubjectType.DEVICE
        self.audit_logger.log(
            AuditEventType.REVIEW_FLAG_RESOLVED,
            Severity.INFO,
            device_token=flag.subject_id if is_device else None,
            persona_id=None if is_device else flag.subject_id,
            details={
                "flag_id": flag_id,
                "review_status": status.value,
                "reviewed_by": reviewer_id,
            },
        )
        logger.info(f"Review flag {flag_id} resolved as {status.value} by {reviewer_id}")
        return closed
    
    def get_flag(self, flag_id: str) -> Optional[ReviewFlag]:
        return self.store.get_flag(flag_id)
    
    def get_open_flag(self, subject_type: SubjectType, subject_id: str) -> Optional[ReviewFlag]:
        return self.store.get_open_flag(subject_type, subject_id)
    
    def get_pending_flags(self, limit: int = DataConstants.PENDING_FLAGS_LIMIT) -> List[ReviewFlag]:
        """Pending flags, most recent first."""
        return self.store.list_flags(ReviewStatus.PENDING, limit=limit)
    
    def list_flags(
        self, status: ReviewStatus, limit: int = DataConstants.DEFAULT_QUERY_LIMIT
    ) -> List[ReviewFlag]:
        return self.store.list_flags(status, limit=limit)
    
    def get_stats(self) -> Dict[str, int]:
        """Number of flags per review status."""
        return self.store.count_flags_by_status()
