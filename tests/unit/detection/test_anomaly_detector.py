"""Tests for the Anomaly Detector."""

import pytest

from veilguard.core.types import AuditEventType, ReviewStatus, RiskLevel, Severity, SubjectType
from veilguard.data.schemas import FeatureSet
from veilguard.detection import AnomalyThresholds, band_for, score_features
from veilguard.detection.thresholds import RiskBands


@pytest.fixture
def rules():
    return AnomalyThresholds()


class TestScoreFeatures:
    
    def test_quiet_device_scores_zero(self, rules):
        score, level, reasons = score_features(FeatureSet(device_token="abc-1", requests_last_hour=3), rules)
        
        assert score == 0
        assert level == RiskLevel.LOW
        assert reasons == []
    
    def test_rules_are_additive(self, rules):
        features = FeatureSet(
            device_token="abc-1",
            failed_auth_rate=30.0,
            distinct_ip_count=12,
        )
        
        score, level, reasons = score_features(features, rules)
        
        assert score == 25 + 25
        assert level == RiskLevel.HIGH
        assert reasons == ["high_failed_auth_rate", "frequent_ip_changes"]
    
    def test_request_rate_zscore(self, rules):
        features = FeatureSet(
            device_token="abc-1",
            requests_last_hour=50,
            baseline_requests_per_hour=10.0,
            baseline_spread=10.0,
        )
        
        score, _, reasons = score_features(features, rules)
        
        assert features.request_rate_zscore == pytest.approx(4.0)
        assert "excessive_request_rate" in reasons
        assert score == 30
    
    def test_score_is_clamped(self, rules):
        features = FeatureSet(
            device_token="abc-1",
            failed_auth_rate=100.0,
            failed_auths_last_hour=50,
            distinct_ip_count=20,
            distinct_user_agent_count=9,
            recent_event_count=500,
            requests_per_day=20000,
            is_suspicious=True,
        )
        
        score, level, _ = score_features(features, rules)
        
        assert score == 100
        assert level == RiskLevel.CRITICAL
    
    def test_revoked_forces_maximum(self, rules):
        score, level, reasons = score_features(FeatureSet(device_token="abc-1", is_revoked=True), rules)
        
        assert score == 100
        assert level == RiskLevel.CRITICAL
        assert reasons[-1] == "device_revoked"
    
    def test_band_recomputed_from_total_not_single_rule(self, rules):
        # Two medium-sized rules together reach the critical band.
        features = FeatureSet(
            device_token="abc-1",
            failed_auth_rate=60.0,
            requests_per_day=11000,
        )
        
        score, level, _ = score_features(features, rules)
        
        assert score == 75
        assert level == RiskLevel.CRITICAL
    
    def test_scoring_is_pure(self, rules):
        features = FeatureSet(device_token="abc-1", failed_auth_rate=55.0, distinct_user_agent_count=3)
        
        results = {score_features(features, rules)[:2] for _ in range(20)}
        
        assert results == {(48, RiskLevel.MEDIUM)}


class TestBands:
    
    @pytest.mark.parametrize("score, level", [
        (0, RiskLevel.LOW),
        (24, RiskLevel.LOW),
        (25, RiskLevel.MEDIUM),
        (49, RiskLevel.MEDIUM),
        (50, RiskLevel.HIGH),
        (69, RiskLevel.HIGH),
        (70, RiskLevel.CRITICAL),
        (100, RiskLevel.CRITICAL),
    ])
    def test_band_boundaries(self, score, level):
        assert band_for(score, RiskBands()) == level


class TestAnomalyDetector:
    
    def test_failed_auth_burst_is_critical(self, detector, registry, store, review_queue):
        registry.resolve_or_create("abc-1")
        for _ in range(12):
            registry.record_failed_auth("abc-1")
        
        result = detector.score("abc-1")
        
        assert result.risk_level == RiskLevel.CRITICAL
        assert "very_high_failed_auth_rate" in result.detected_anomalies
        assert "failed_auth_burst" in result.detected_anomalies
        assert store.get_latest_anomaly_score("abc-1").score_id == result.score_id
        
        detected = store.list_audit_events("abc-1", event_types=[AuditEventType.ANOMALY_DETECTED.value])
        assert len(detected) == 1
        assert detected[0].severity == Severity.CRITICAL
        
        flag = review_queue.get_open_flag(SubjectType.DEVICE, "abc-1")
        assert flag is not None
        assert flag.severity == RiskLevel.CRITICAL
        assert flag.review_status == ReviewStatus.PENDING
    
    def test_rescoring_does_not_duplicate_flags(self, detector, registry, review_queue):
        registry.resolve_or_create("abc-1")
        for _ in range(12):
            registry.record_failed_auth("abc-1")
        
        detector.score("abc-1")
        detector.score("abc-1")
        
        assert len(review_queue.get_pending_flags()) == 1
    
    def test_high_score_marks_device_suspicious(self, detector, registry):
        registry.resolve_or_create("abc-1")
        for _ in range(12):
            registry.record_failed_auth("abc-1")
        registry.clear_suspicious("abc-1", "test")
        
        detector.score("abc-1")
        
        assert registry.get_device("abc-1").is_suspicious is True
    
    def test_stale_suspicion_is_cleared(self, detector, registry, store):
        registry.resolve_or_create("abc-1")
        registry.mark_suspicious("abc-1", "manual")
        
        result = detector.score("abc-1")
        
        assert result.detected_anomalies == ["previously_marked_suspicious"]
        assert registry.get_device("abc-1").is_suspicious is False
        cleared = store.list_audit_events("abc-1", event_types=[AuditEventType.SUSPICIOUS_CLEARED.value])
        assert len(cleared) == 1
    
    def test_score_without_recording(self, detector, registry, store):
        registry.resolve_or_create("abc-1")
        
        detector.score("abc-1", record=False)
        
        assert store.get_latest_anomaly_score("abc-1") is None
    
    def test_should_score_every_nth_request(self, detector, registry):
        device = registry.resolve_or_create("abc-1")
        assert detector.should_score(device) is False
        
        assert detector.should_score(device.model_copy(update={"request_count": 100})) is True
        assert detector.should_score(device.model_copy(update={"is_suspicious": True})) is True
    
    def test_unknown_device(self, detector):
        from veilguard.common.exceptions import NotFoundError
        with pytest.raises(NotFoundError):
            detector.score("ghost-1")


class TestFeatureExtraction:
    
    def test_features_from_requests_and_events(self, detector, registry, clock):
        registry.resolve_or_create("abc-1", "10.0.0.1", "ios/1.0")
        registry.resolve_or_create("abc-1", "10.0.0.2", "ios/1.0")
        registry.resolve_or_create("abc-1", "10.0.0.3", "ios/1.1")
        registry.record_failed_auth("abc-1")
        
        features = detector.compute_features(registry.get_device("abc-1"))
        
        assert features.request_count == 3
        assert features.requests_last_hour == 3
        assert features.failed_auths_last_hour == 1
        assert features.failed_auth_rate == pytest.approx(33.33)
        assert features.distinct_ip_count == 3
        assert features.distinct_user_agent_count == 2
    
    def test_distinct_ips_span_device_lifetime(self, detector, registry, clock):
        registry.resolve_or_create("abc-1", "10.0.0.1", "ios/1.0")
        clock.advance(days=10)
        registry.resolve_or_create("abc-1", "10.0.0.2", "ios/1.0")
        clock.advance(days=10)
        registry.resolve_or_create("abc-1", "10.0.0.3", "ios/1.0")
        
        features = detector.compute_features(registry.get_device("abc-1"))
        
        assert features.distinct_ip_count == 3
        assert features.requests_last_hour == 1

    def test_baseline_defaults_without_population(self, detector, clock):
        baseline, spread = detector.feature_extractor.population_baseline()
        
        assert baseline == 10.0
        assert spread == 5.0
    
    def test_baseline_uses_population_mean(self, detector, registry, clock):
        for _ in range(4):
            registry.resolve_or_create("dev-a")
        registry.resolve_or_create("dev-b")
        registry.revoke("dev-b", "abuse")
        registry.resolve_or_create("dev-c")
        
        baseline, spread = detector.feature_extractor.population_baseline()
        
        # dev-a: 4/h, dev-c: 1/h, dev-b excluded
        assert baseline == pytest.approx(2.5)
        assert spread == pytest.approx(1.5)
    
    def test_baseline_is_cached(self, detector, registry, clock):
        first = detector.feature_extractor.population_baseline()
        registry.resolve_or_create("dev-a")
        
        assert detector.feature_extractor.population_baseline() == first
        detector.feature_extractor.invalidate_baseline()
        assert detector.feature_extractor.population_baseline() != first
