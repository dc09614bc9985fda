"""Integration tests for Veilguard.

End-to-end tests that run device, session, scoring and rate-limit flows
through a fully wired TrustService on the in-memory store.
"""

import threading
from datetime import timedelta

import pytest

from veilguard.common.exceptions import RevokedError
from veilguard.core.types import AuditEventType, ReviewStatus, RiskLevel, SessionState, SubjectType
from veilguard.ratelimit import RateLimitPolicy


class TestDeviceScenarios:
    """New devices and failed-auth bursts."""
    
    def test_new_device_first_request(self, service):
        outcome = service.handle_request("abc-1", "203.0.113.7", "VeilApp/3.1")
        device = service.registry.get_device("abc-1")
        
        assert device.request_count == 1
        assert device.is_suspicious is False
        assert outcome.session_valid is True
    
    def test_failed_auth_burst_is_critical(self, service, store, clock):
        service.handle_request("abc-1", "203.0.113.7", "VeilApp/3.1")
        for _ in range(12):
            clock.advance(seconds=30)
            service.record_failed_auth("abc-1", "203.0.113.7", "VeilApp/3.1")
        
        score = service.score("abc-1")
        
        assert score.risk_level == RiskLevel.CRITICAL
        assert score.score == 90
        assert "very_high_failed_auth_rate" in score.detected_anomalies
        assert service.registry.get_device("abc-1").is_suspicious is True
        
        flag = service.review_queue.get_open_flag(SubjectType.DEVICE, "abc-1")
        assert flag is not None
        assert flag.severity == RiskLevel.CRITICAL
        
        anomalies = store.list_audit_events("abc-1", event_types=[AuditEventType.ANOMALY_DETECTED.value])
        assert anomalies[0].severity.value == "critical"
    
    def test_repeated_scoring_keeps_one_flag(self, service, clock):
        service.handle_request("abc-1")
        for _ in range(12):
            service.record_failed_auth("abc-1")
        
        for _ in range(3):
            service.score("abc-1")
            clock.advance(seconds=10)
        
        pending = service.list_review_flags(ReviewStatus.PENDING)
        assert [f.subject_id for f in pending] == ["abc-1"]
    
    def test_score_is_pure_for_fixed_state(self, service):
        service.handle_request("abc-1")
        for _ in range(3):
            service.record_failed_auth("abc-1")
        detector = service.detector
        features = detector.compute_features(service.registry.get_device("abc-1"))
        
        results = {detector.score_features(features)[:2] for _ in range(10)}
        
        assert len(results) == 1


class TestChurnScenario:
    """Follow/unfollow churn against one target."""
    
    def test_churn_blocks_then_expires(self, service, clock):
        policy = RateLimitPolicy.tuple_limit("follow", window_seconds=86400, max_count=3)
        for _ in range(3):
            assert service.check_and_record("u1", "u2", "follow", policy).allowed
            clock.advance(minutes=5)
            service.record_action("u1", "u2", "unfollow")
            clock.advance(minutes=5)
        
        denied = service.check_rate_limit("u1", "u2", "follow", policy)
        
        assert denied.allowed is False
        assert denied.code == "churn_detected"
        assert "follow" in denied.reason
        
        clock.advance(hours=24)
        
        assert service.check_rate_limit("u1", "u2", "follow", policy).allowed is True
    
    def test_churn_sweep_flags_persona(self, service, clock):
        for i in range(6):
            for _ in range(2):
                service.record_action("u1", f"creator-{i}", "follow")
                service.record_action("u1", f"creator-{i}", "unfollow")
            clock.advance(minutes=1)
        
        flags = service.flag_churn_accounts()
        
        assert [(f.subject_type, f.subject_id) for f in flags] == [(SubjectType.PERSONA, "u1")]
        assert service.flag_churn_accounts() == []
        assert service.get_churn_stats("u1").churn_severity == "high"


class TestSessionScenario:
    """Refresh-ahead and debounce."""
    
    def test_auto_refresh_then_debounce(self, service, clock):
        start = clock()
        service.handle_request("abc-1")
        
        clock.set(start + timedelta(hours=23))
        first = service.handle_request("abc-1")
        clock.advance(seconds=1)
        second = service.handle_request("abc-1")
        
        assert first.refreshed is True
        assert first.expires_at == start + timedelta(hours=47)
        assert second.refreshed is False
        assert second.expires_at == first.expires_at
    
    def test_explicit_refresh_is_debounced_and_monotonic(self, service, clock):
        service.handle_request("abc-1")
        clock.advance(hours=1)
        first = service.refresh_session("abc-1")
        clock.advance(seconds=30)
        
        assert service.refresh_session("abc-1") == first
        
        clock.advance(minutes=5)
        assert service.refresh_session("abc-1") > first
    
    def test_concurrent_refresh_never_moves_expiry_backwards(self, service, clock):
        service.handle_request("abc-1")
        clock.advance(hours=2)
        barrier = threading.Barrier(20)
        results = []
        
        def refresh():
            barrier.wait()
            results.append(service.refresh_session("abc-1"))
        
        threads = [threading.Thread(target=refresh) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        
        status = service.session_status("abc-1")
        assert status.refresh_count == 1
        assert set(results) == {status.expires_at}


class TestRevocationScenario:
    """Revocation is terminal until an explicit unban."""
    
    def test_revocation_survives_time_and_refresh(self, service, clock):
        service.handle_request("abc-1")
        service.revoke_device("abc-1", "coordinated harassment", actor_id="admin-1")
        
        clock.advance(days=400)
        
        with pytest.raises(RevokedError):
            service.handle_request("abc-1")
        with pytest.raises(RevokedError):
            service.refresh_session("abc-1")
        assert service.session_status("abc-1").state == SessionState.REVOKED
        assert service.validate_session("abc-1")[0] is False
    
    def test_unban_restores_access(self, service):
        service.handle_request("abc-1")
        service.revoke_device("abc-1", "mistake")
        service.unban_device("abc-1", "reviewed", "admin-1")
        
        assert service.handle_request("abc-1").session_valid is True


class TestRateLimitRace:
    """Concurrent check-and-record on the last slots of a limit."""
    
    def test_fifty_concurrent_attempts_respect_limit(self, service):
        policy = RateLimitPolicy.tuple_limit("follow", window_seconds=86400, max_count=3)
        barrier = threading.Barrier(50)
        allowed = []
        lock = threading.Lock()
        
        def attempt():
            barrier.wait()
            decision = service.check_and_record("u1", "u2", "follow", policy)
            with lock:
                allowed.append(decision.allowed)
        
        threads = [threading.Thread(target=attempt) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        
        assert allowed.count(True) == 3
        assert service.get_churn_stats("u1").total_actions == 3
