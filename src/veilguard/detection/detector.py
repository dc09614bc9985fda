"""Anomaly Detector - rule-based, additive risk scoring per device.

No learned model: every rule is a threshold on one feature, matching
rules add points, the sum is clamped to [0, 100] and the risk band is
always recomputed from the clamped score. Given the same FeatureSet the
result is identical every time.
"""

import logging
from typing import List, Optional, Tuple

from veilguard.common.constants import DetectionConstants
from veilguard.common.exceptions import NotFoundError
from veilguard.common.time_utils import Clock, utc_now
from veilguard.core.types import AuditEventType, RiskLevel, Severity, SubjectType
from veilguard.data.schemas import AnomalyScore, Device, FeatureSet
from veilguard.detection.features import FeatureExtractor
from veilguard.detection.thresholds import AnomalyThresholds, RiskBands
from veilguard.governance.audit.logger import AuditLogger
from veilguard.governance.review import ReviewQueue
from veilguard.registry.device_registry import DeviceRegistry
from veilguard.storage.base import TrustStore

logger = logging.getLogger(__name__)


REVOKED_REASON = "device_revoked"
PREVIOUSLY_SUSPICIOUS_REASON = "previously_marked_suspicious"
FLAGGED_LEVELS = (RiskLevel.HIGH, RiskLevel.CRITICAL)


def band_for(score: int, bands: RiskBands) -> RiskLevel:
    """Map a clamped score to its risk band."""
    if score >= bands.critical:
        return RiskLevel.CRITICAL
    if score >= bands.high:
        return RiskLevel.HIGH
    if score >= bands.medium:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def score_features(
    features: FeatureSet, thresholds: AnomalyThresholds
) -> Tuple[int, RiskLevel, List[str]]:
    """Score a feature snapshot.
    
    Args:
        features: Snapshot to score
        thresholds: Rule table
        
    Returns:
        Tuple of (score 0-100, risk band, reason codes in rule order)
    """
    checks = [
        (thresholds.request_rate_zscore, features.request_rate_zscore),
        (thresholds.failed_auth_rate, features.failed_auth_rate),
        (thresholds.failed_auth_burst, features.failed_auths_last_hour),
        (thresholds.ip_changes, features.distinct_ip_count),
        (thresholds.user_agent_changes, features.distinct_user_agent_count),
        (thresholds.recent_events, features.recent_event_count),
        (thresholds.daily_requests, features.requests_per_day),
    ]
    
    score = 0
    reasons: List[str] = []
    for rule, value in checks:
        tier = rule.match(value)
        if tier is not None:
            score += tier.points
            reasons.append(tier.code)
    
    if features.is_suspicious and thresholds.previously_suspicious_points:
        score += thresholds.previously_suspicious_points
        reasons.append(PREVIOUSLY_SUSPICIOUS_REASON)
    
    if features.is_revoked:
        score = DetectionConstants.SCORE_MAX
        reasons.append(REVOKED_REASON)
    
    score = max(DetectionConstants.SCORE_MIN, min(DetectionConstants.SCORE_MAX, score))
    return score, band_for(score, thresholds.bands), reasons


class AnomalyDetector:
    """Scores devices and acts on the result."""
    
    def __init__(
        self,
        store: TrustStore,
        registry: DeviceRegistry,
        audit_logger: AuditLogger,
        thresholds: Optional[AnomalyThresholds] = None,
        review_queue: Optional[ReviewQueue] = None,
        clock: Optional[Clock] = None,
        every_n_requests: int = DetectionConstants.EVERY_N_REQUESTS,
        feature_extractor: Optional[FeatureExtractor] = None,
    ):
        """Initialize detector.
        
        Args:
            store: Trust store (score history)
            registry: Device registry (suspicion flag)
            audit_logger: Audit logger
            thresholds: Rule table. Defaults to built-in thresholds.
            review_queue: Queue that receives high and critical devices
            clock: Time source
            every_n_requests: Opportunistic scoring interval
            feature_extractor: Custom feature extractor
        """
        self.store = store
        self.registry = registry
        self.audit_logger = audit_logger
        self.thresholds = thresholds or AnomalyThresholds()
        self.review_queue = review_queue
        self.clock = clock or utc_now
        self.every_n_requests = every_n_requests
        self.feature_extractor = feature_extractor or FeatureExtractor(
            store, registry, self.thresholds, clock=self.clock
        )
    
    def should_score(self, device: Device) -> bool:
        """Opportunistic trigger: every Nth request, or any suspicious device."""
        return device.is_suspicious or device.request_count % self.every_n_requests == 0
    
    def compute_features(self, device: Device) -> FeatureSet:
        return self.feature_extractor.compute_features(device)
    
    def score_features(self, features: FeatureSet) -> Tuple[int, RiskLevel, List[str]]:
        return score_features(features, self.thresholds)
    
    def score(self, device_token: str, record: bool = True) -> AnomalyScore:
        """Score a device from its current state.
        
        Args:
            device_token: Device to score
            record: Persist the score and apply its consequences
            
        Returns:
            The computed AnomalyScore
            
        Raises:
            NotFoundError: If the device does not exist
        """
        device = self.store.get_device(device_token)
        if device is None:
            raise NotFoundError(f"Device not found: {device_token}", "device", device_token)
        
        features = self.compute_features(device)
        value, level, reasons = self.score_features(features)
        result = AnomalyScore(
            device_token=device_token,
            score=value,
            risk_level=level,
            detected_anomalies=reasons,
            feature_snapshot=features,
            created_at=self.clock(),
        )
        logger.debug(f"Scored {device_token}: {value} ({level.value}) {reasons}")
        
        if record:
            self._record(result)
        return result
    
    def _record(self, result: AnomalyScore) -> None:
        token = result.device_token
        features = result.feature_snapshot
        self.store.put_anomaly_score(result)
        
        if result.risk_level in FLAGGED_LEVELS:
            self.registry.mark_suspicious(
                token, "anomaly_detected", {"score": result.score, "risk_level": result.risk_level.value}
            )
            severity = Severity.CRITICAL if result.risk_level == RiskLevel.CRITICAL else Severity.WARNING
            self.audit_logger.log(
                AuditEventType.ANOMALY_DETECTED,
                severity,
                device_token=token,
                details={
                    "score": result.score,
                    "risk_level": result.risk_level.value,
                    "anomalies": result.detected_anomalies,
                    "score_id": result.score_id,
                },
            )
            logger.warning(f"Anomaly detected for {token}: {result.score} ({result.risk_level.value})")
            if self.review_queue is not None:
                self.review_queue.flag_for_review(
                    token,
                    SubjectType.DEVICE,
                    result.risk_level,
                    "anomaly_detected",
                    stats={
                        "score": result.score,
                        "anomalies": result.detected_anomalies,
                        "features": features.model_dump(mode="json"),
                    },
                )
            return
        
        if features.is_suspicious and not features.is_revoked:
            # The sticky suspicion points alone do not keep a device flagged.
            unflagged = features.model_copy(update={"is_suspicious": False})
            if score_features(unflagged, self.thresholds)[0] == 0:
                self.registry.clear_suspicious(token, "no_anomaly_rules_matched")
    
    def latest_score(self, device_token: str) -> Optional[AnomalyScore]:
        """The authoritative (most recent) score for a device."""
        return self.store.get_latest_anomaly_score(device_token)
