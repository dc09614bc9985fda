"""Churn Detector - follow/unfollow cycling on the same targets."""

import logging
from collections import Counter
from datetime import timedelta
from typing import List, Optional, Sequence

from veilguard.common.constants import RateLimitConstants
from veilguard.common.time_utils import Clock, utc_now
from veilguard.core.types import AuditEventType, RiskLevel, Severity, SubjectType
from veilguard.data.schemas import ChurnStats, ReviewFlag
from veilguard.governance.audit.logger import AuditLogger
from veilguard.governance.review import ReviewQueue
from veilguard.storage.base import TrustStore

logger = logging.getLogger(__name__)


# (minimum churn targets, severity), highest first
CHURN_SEVERITY_TIERS = [
    (10, RiskLevel.CRITICAL),
    (5, RiskLevel.HIGH),
    (2, RiskLevel.MEDIUM),
    (1, RiskLevel.LOW),
]


def churn_severity(churn_target_count: int) -> str:
    """Severity label for a number of churned targets ("none" below one)."""
    for minimum, level in CHURN_SEVERITY_TIERS:
        if churn_target_count >= minimum:
            return level.value
    return "none"


class ChurnDetector:
    """Computes churn statistics and flags heavy churners for review."""
    
    def __init__(
        self,
        store: TrustStore,
        review_queue: ReviewQueue,
        audit_logger: AuditLogger,
        clock: Optional[Clock] = None,
        window_hours: int = RateLimitConstants.CHURN_WINDOW_HOURS,
        target_min_actions: int = RateLimitConstants.CHURN_TARGET_MIN_ACTIONS,
        flag_min_targets: int = RateLimitConstants.CHURN_FLAG_MIN_TARGETS,
        action_types: Sequence[str] = RateLimitConstants.CHURN_ACTION_TYPES,
    ):
        self.store = store
        self.review_queue = review_queue
        self.audit_logger = audit_logger
        self.clock = clock or utc_now
        self.window_hours = window_hours
        self.target_min_actions = target_min_actions
        self.flag_min_targets = flag_min_targets
        self.action_types = tuple(action_types)
    
    def get_churn_stats(self, actor_id: str, window_hours: Optional[int] = None) -> ChurnStats:
        """Summarize an actor's follow/unfollow activity.
        
        A churn target is a target with at least ``target_min_actions``
        follow or unfollow records inside the window.
        """
        hours = window_hours or self.window_hours
        since = self.clock() - timedelta(hours=hours)
        records = self.store.list_action_records(actor_id, since, self.action_types)
        
        per_target = Counter(r.target_id for r in records if r.target_id is not None)
        churned = sorted(t for t, n in per_target.items() if n >= self.target_min_actions)
        
        return ChurnStats(
            actor_id=actor_id,
            window_hours=hours,
            total_actions=len(records),
            unique_targets=len(per_target),
            churn_targets=churned,
            churn_severity=churn_severity(len(churned)),
        )
    
    def flag_churn_accounts(
        self,
        min_churn_targets: Optional[int] = None,
        window_hours: Optional[int] = None,
    ) -> List[ReviewFlag]:
        """Flag every actor churning at least ``min_churn_targets`` targets.
        
        Actors already pending review are skipped, so repeated sweeps do
        not create duplicate flags.
        
        Returns:
            Flags created by this sweep
        """
        minimum = min_churn_targets or self.flag_min_targets
        hours = window_hours or self.window_hours
        since = self.clock() - timedelta(hours=hours)
        
        created_flags: List[ReviewFlag] = []
        for actor_id in self.store.list_actors_with_actions(since, self.action_types):
            stats = self.get_churn_stats(actor_id, hours)
            if stats.churn_target_count < minimum:
                continue
            
            flag, created = self.review_queue.flag_for_review(
                actor_id,
                SubjectType.PERSONA,
                RiskLevel(stats.churn_severity),
                "churn_detected",
                stats=stats.model_dump(mode="json"),
            )
            if not created:
                continue
            
            created_flags.append(flag)
            self.audit_logger.log(
                AuditEventType.CHURN_FLAGGED,
                Severity.WARNING,
                persona_id=actor_id,
                details={
                    "flag_id": flag.flag_id,
                    "churn_targets": stats.churn_target_count,
                    "churn_severity": stats.churn_severity,
                },
            )
        
        logger.info(f"Churn sweep flagged {len(created_flags)} accounts")
        return created_flags
