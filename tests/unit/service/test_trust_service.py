"""Unit tests for the trust service request flow and failure policy."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from veilguard.common.config import Config
from veilguard.common.exceptions import (
    NotFoundError,
    PolicyDeniedError,
    RevokedError,
    TransientError,
    ValidationError,
)
from veilguard.core.types import AuditEventType, SessionState, Severity
from veilguard.service import TrustService


def _events(store, token, event_type):
    return store.list_audit_events(token, event_types=[event_type.value])


class TestHandleRequest:
    
    def test_first_request(self, service, clock):
        outcome = service.handle_request("dev-1", "10.0.0.1", "VeilApp/3.1")
        
        assert outcome.request_count == 1
        assert outcome.session_valid is True
        assert outcome.session_state == SessionState.ACTIVE
        assert outcome.expires_at == clock() + timedelta(hours=24)
        assert outcome.refreshed is False
        assert outcome.is_suspicious is False
        assert outcome.anomaly_score is None
    
    def test_malformed_token_never_reaches_storage(self, service, store):
        with pytest.raises(ValidationError):
            service.handle_request("../etc/passwd")
        
        assert store.get_device("../etc/passwd") is None
    
    def test_links_persona_from_directory(self, service, profiles, clock):
        profiles.register("u1", clock() - timedelta(days=30), device_token="dev-1")
        
        outcome = service.handle_request("dev-1")
        
        assert outcome.persona_ids == ["u1"]
        assert service.registry.get_device("dev-1").active_persona_id == "u1"
    
    def test_refresh_ahead(self, service, clock):
        service.handle_request("dev-1")
        clock.advance(hours=23, minutes=30)
        
        outcome = service.handle_request("dev-1")
        
        assert outcome.refreshed is True
        assert outcome.expires_at == clock() + timedelta(hours=24)
    
    def test_no_refresh_outside_window(self, service, clock):
        service.handle_request("dev-1")
        clock.advance(hours=2)
        
        outcome = service.handle_request("dev-1")
        
        assert outcome.refreshed is False
        assert service.session_status("dev-1").last_activity_at == clock()
    
    def test_expired_session_is_anonymous(self, service, store, clock):
        service.handle_request("dev-1")
        clock.advance(hours=25)
        
        outcome = service.handle_request("dev-1")
        
        assert outcome.session_valid is False
        assert outcome.session_state == SessionState.EXPIRED
        attempts = _events(store, "dev-1", AuditEventType.EXPIRED_SESSION_ACCESS_ATTEMPT)
        assert len(attempts) == 1
        assert attempts[0].severity == Severity.WARNING
    
    def test_revoked_device_is_rejected_forever(self, service, store, clock):
        service.handle_request("dev-1")
        service.revoke_device("dev-1", "abuse", actor_id="admin-1")
        
        for days in (0, 1, 30, 365):
            clock.advance(days=days)
            with pytest.raises(RevokedError):
                service.handle_request("dev-1")
        
        attempts = _events(store, "dev-1", AuditEventType.REVOKED_DEVICE_ACCESS_ATTEMPT)
        assert len(attempts) == 4
        assert all(e.severity == Severity.ERROR for e in attempts)
    
    def test_suspicious_access_is_audited(self, service, store):
        service.handle_request("dev-1")
        service.registry.mark_suspicious("dev-1", "manual")
        
        service.handle_request("dev-1")
        
        assert len(_events(store, "dev-1", AuditEventType.SUSPICIOUS_DEVICE_ACCESS)) == 1
    
    def test_scores_every_nth_request(self, store, thresholds, policies, profiles, clock):
        service = TrustService(
            store, thresholds=thresholds, policies=policies, profile_directory=profiles,
            clock=clock, config=Config(anomaly_every_n_requests=5),
        )
        
        outcomes = [service.handle_request("dev-1") for _ in range(5)]
        
        assert [o.anomaly_score is not None for o in outcomes] == [False, False, False, False, True]


class TestRevocationAndUnban:
    
    def test_revoke_persists_revoked_session(self, service, store):
        service.handle_request("dev-1")
        
        service.revoke_device("dev-1", "abuse")
        
        assert store.get_session("dev-1").state == SessionState.REVOKED
        assert service.validate_session("dev-1")[0] is False
    
    def test_refresh_of_revoked_device_is_logged(self, service, store):
        service.handle_request("dev-1")
        service.revoke_device("dev-1", "abuse")
        
        with pytest.raises(RevokedError):
            service.refresh_session("dev-1")
        
        assert len(_events(store, "dev-1", AuditEventType.REVOKED_DEVICE_ACCESS_ATTEMPT)) == 1
    
    def test_unban_issues_fresh_session(self, service, clock):
        service.handle_request("dev-1")
        service.revoke_device("dev-1", "abuse")
        clock.advance(hours=1)
        
        assert service.unban_device("dev-1", "appeal granted", "admin-1") is True
        
        outcome = service.handle_request("dev-1")
        assert outcome.session_valid is True
        assert outcome.expires_at == clock() + timedelta(hours=24)
    
    def test_revoke_unknown_device(self, service):
        with pytest.raises(NotFoundError):
            service.revoke_device("dev-missing", "abuse")
    
    def test_clear_suspicious(self, service):
        service.handle_request("dev-1")
        service.registry.mark_suspicious("dev-1", "manual")
        
        assert service.clear_suspicious("dev-1", actor_id="admin-1") is True
        assert service.clear_suspicious("dev-1", actor_id="admin-1") is False
        with pytest.raises(NotFoundError):
            service.clear_suspicious("dev-missing")


class TestRotation:
    
    @pytest.fixture
    def linked(self, service):
        service.handle_request("dev-1")
        service.registry.link_persona("dev-1", "u1")
        return service
    
    def test_rotation_moves_write_binding(self, linked, store):
        device = linked.rotate_device("u1", "dev-1", "dev-2", "10.0.0.2", "VeilApp/3.2")
        
        assert device.active_persona_id == "u1"
        assert linked.registry.get_device("dev-1").active_persona_id is None
        assert linked.sessions.is_valid("dev-2")
        rotated = _events(store, "dev-2", AuditEventType.DEVICE_ROTATED)
        assert rotated[0].details == {"previous_device_token": "dev-1"}
    
    def test_rotation_limit(self, linked, clock):
        tokens = ["dev-1", "dev-2", "dev-3", "dev-4"]
        for old, new in zip(tokens, tokens[1:]):
            linked.rotate_device("u1", old, new)
            clock.advance(minutes=5)
        
        with pytest.raises(PolicyDeniedError) as exc_info:
            linked.rotate_device("u1", "dev-4", "dev-5")
        
        assert exc_info.value.policy_code == "daily_limit"
        assert linked.registry.get_device("dev-5") is None
    
    def test_new_device_bound_to_other_persona(self, linked):
        linked.handle_request("dev-9")
        linked.registry.link_persona("dev-9", "u2")
        
        with pytest.raises(PolicyDeniedError) as exc_info:
            linked.rotate_device("u1", "dev-1", "dev-9")
        
        assert exc_info.value.policy_code == "device_linked_elsewhere"
    
    def test_revoked_old_device(self, linked):
        linked.revoke_device("dev-1", "abuse")
        
        with pytest.raises(RevokedError):
            linked.rotate_device("u1", "dev-1", "dev-2")


class TestFailurePolicy:
    
    @staticmethod
    def _unavailable(*args, **kwargs):
        raise TransientError("throttled")
    
    def test_session_validation_fails_closed(self, service, store, monkeypatch):
        service.handle_request("dev-1")
        monkeypatch.setattr(store, "get_session", self._unavailable)
        
        assert service.validate_session("dev-1") == (False, None)
    
    def test_scoring_fails_open(self, service, monkeypatch):
        service.handle_request("dev-1")
        monkeypatch.setattr(service.detector, "score", self._unavailable)
        
        assert service.score("dev-1") is None
        with pytest.raises(TransientError):
            service.score("dev-1", fail_open=False)
    
    def test_rate_limit_check_fails_closed_by_default(self, service, monkeypatch):
        monkeypatch.setattr(service.rate_limiter, "check", self._unavailable)
        
        closed = service.check_rate_limit("u1", "u2", "follow")
        opened = service.check_rate_limit("u1", "u2", "follow", fail_open=True)
        
        assert closed.allowed is False
        assert closed.code == "check_unavailable"
        assert opened.allowed is True
    
    def test_scoring_audit_failure_does_not_block_request(self, service, store, monkeypatch):
        service.handle_request("abc-1")
        for _ in range(12):
            service.record_failed_auth("abc-1")
        append = store.append_audit_event
        
        def append_failing_anomalies(event):
            if event.event_type == AuditEventType.ANOMALY_DETECTED.value:
                raise TransientError("throttled")
            append(event)
        
        monkeypatch.setattr(store, "append_audit_event", append_failing_anomalies)
        monkeypatch.setattr(service.audit_logger, "_sleep", lambda _: None)
        
        outcome = service.handle_request("abc-1")
        
        assert outcome.anomaly_score is None
        assert outcome.session_valid is True
        assert outcome.request_count == 2
    
    def test_scoring_failure_raises_when_fail_closed(self, service, monkeypatch):
        service.handle_request("dev-1")
        
        def broken(*args, **kwargs):
            raise RuntimeError("detector bug")
        
        monkeypatch.setattr(service.detector, "score", broken)
        
        assert service.score("dev-1") is None
        with pytest.raises(RuntimeError):
            service.score("dev-1", fail_open=False)
    
    def test_scoring_unknown_device_still_raises(self, service):
        with pytest.raises(NotFoundError):
            service.score("ghost-1")
    
    def test_risk_lookup_outage_follows_fail_policy(self, service, store, monkeypatch):
        service.handle_request("dev-1")
        monkeypatch.setattr(store, "get_latest_anomaly_score", self._unavailable)
        
        closed = service.check_rate_limit("u1", "u2", "follow", device_token="dev-1")
        opened = service.check_rate_limit("u1", "u2", "follow", device_token="dev-1", fail_open=True)
        
        assert closed.allowed is False
        assert closed.code == "check_unavailable"
        assert opened.allowed is True
        assert opened.code == "check_unavailable"
    
    def test_risk_lookup_outage_fails_check_and_record_closed(self, service, store, monkeypatch):
        service.handle_request("dev-1")
        monkeypatch.setattr(store, "get_latest_anomaly_score", self._unavailable)
        
        with pytest.raises(TransientError):
            service.check_and_record("u1", "u2", "follow", device_token="dev-1")
        assert store.get_action_ledger("u1", "follow").entries == []
    
    def test_budget_exceeded_is_transient(self, store, thresholds, policies, clock):
        release = threading.Event()
        with ThreadPoolExecutor(max_workers=1) as executor:
            service = TrustService(
                store, thresholds=thresholds, policies=policies, clock=clock,
                config=Config(), check_budget_seconds=0.01, executor=executor,
            )
            try:
                with pytest.raises(TransientError):
                    service._run_with_budget(lambda: release.wait(5), "slow_check")
            finally:
                release.set()
    
    def test_budget_allows_fast_checks(self, store, thresholds, policies, clock):
        with ThreadPoolExecutor(max_workers=1) as executor:
            service = TrustService(
                store, thresholds=thresholds, policies=policies, clock=clock,
                config=Config(), check_budget_seconds=5, executor=executor,
            )
            
            outcome = service.handle_request("dev-1")
        
        assert outcome.session_valid is True


class TestRateLimitsThroughService:
    
    def test_risk_band_from_latest_score(self, service, store):
        service.handle_request("dev-1")
        for _ in range(10):
            service.record_failed_auth("dev-1")
        score = service.score("dev-1")
        
        assert service.latest_risk_level("dev-1") == score.risk_level
    
    def test_raise_on_deny(self, service):
        service.check_and_record("u1", "u2", "follow", raise_on_deny=True)
        
        with pytest.raises(PolicyDeniedError):
            service.check_and_record("u1", "u3", "follow", raise_on_deny=True)
    
    def test_record_action_feeds_churn_stats(self, service):
        for _ in range(2):
            service.record_action("u1", "u2", "follow")
            service.record_action("u1", "u2", "unfollow")
        
        stats = service.get_churn_stats("u1")
        
        assert stats.churn_targets == ["u2"]


class TestConstruction:
    
    def test_from_config_loads_rule_tables(self, store):
        service = TrustService.from_config(Config(), store=store)
        
        assert "follow" in service.rate_limiter.policies.policies
        assert service.check_budget_seconds == pytest.approx(0.05)
    
    def test_from_config_without_files(self, store, tmp_path):
        config = Config(
            thresholds_file=tmp_path / "missing.yaml",
            policies_file=tmp_path / "missing-policies.yaml",
        )
        
        service = TrustService.from_config(config, store=store)
        
        with pytest.raises(ValidationError):
            service.check_rate_limit("u1", "u2", "follow")
    
    def test_log_event_and_retention(self, service, store):
        service.log_event("dev-1", None, "custom_signal", Severity.INFO, {"k": "v"})
        
        results = service.run_retention_sweep()
        
        assert set(results) >= {"events_info", "closed_flags", "action_records", "request_buckets"}
        assert len(store.list_audit_events("dev-1", event_types=["custom_signal"])) == 1
