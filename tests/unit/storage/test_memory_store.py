"""Contract tests for the in-memory trust store primitives."""

import threading
from datetime import timedelta

import pytest

from veilguard.common.config import Config, StorageBackend
from veilguard.core.types import ReviewStatus, RiskLevel, SessionState, SubjectType
from veilguard.data.schemas import ActionLedger, LedgerEntry, ReviewFlag, Session
from veilguard.storage import InMemoryTrustStore, create_trust_store


def _session(now, version=1, state=SessionState.ACTIVE):
    return Session(
        device_token="dev-1",
        state=state,
        created_at=now,
        expires_at=now + timedelta(hours=24),
        timeout_seconds=86400,
        last_activity_at=now,
        version=version,
    )


class TestDevices:
    
    def test_first_upsert_creates(self, store, clock):
        device, previous = store.upsert_device_on_request("dev-1", clock(), ip_address="10.0.0.1")
        
        assert previous is None
        assert device.request_count == 1
        assert device.first_seen_at == clock()
        assert device.ip_address == "10.0.0.1"
    
    def test_second_upsert_returns_previous(self, store, clock):
        store.upsert_device_on_request("dev-1", clock(), ip_address="10.0.0.1")
        clock.advance(minutes=5)
        
        device, previous = store.upsert_device_on_request("dev-1", clock(), ip_address="10.0.0.2")
        
        assert previous.ip_address == "10.0.0.1"
        assert device.ip_address == "10.0.0.2"
        assert device.request_count == 2
        assert device.last_seen_at == clock()
    
    def test_concurrent_upserts_count_every_request(self, store, clock):
        barrier = threading.Barrier(25)
        
        def hit():
            barrier.wait()
            for _ in range(4):
                store.upsert_device_on_request("dev-1", clock())
        
        threads = [threading.Thread(target=hit) for _ in range(25)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        
        assert store.get_device("dev-1").request_count == 100
    
    def test_revoke_is_conditional(self, store, clock):
        store.upsert_device_on_request("dev-1", clock())
        
        assert store.revoke_device("dev-1", "abuse", clock()) is True
        assert store.revoke_device("dev-1", "again", clock()) is False
        assert store.get_device("dev-1").revoked_reason == "abuse"
        assert store.unban_device("dev-1") is True
        assert store.unban_device("dev-1") is False
    
    def test_active_persona_is_set_once(self, store, clock):
        store.upsert_device_on_request("dev-1", clock())
        
        assert store.set_active_persona_if_unset("dev-1", "p1") == "p1"
        assert store.set_active_persona_if_unset("dev-1", "p2") == "p1"
        assert store.clear_active_persona("dev-1", "p2") is False
        assert store.clear_active_persona("dev-1", "p1") is True
        assert store.set_active_persona_if_unset("dev-1", "p2") == "p2"
    
    def test_failed_auth_on_unknown_device(self, store, clock):
        assert store.increment_failed_auth("ghost", clock()) is None


class TestCompareAndSet:
    
    def test_session_create_only_once(self, store, clock):
        assert store.create_session(_session(clock())) is True
        assert store.create_session(_session(clock())) is False
    
    def test_session_version_check(self, store, clock):
        store.create_session(_session(clock()))
        
        assert store.compare_and_set_session(_session(clock(), version=2), expected_version=1) is True
        assert store.compare_and_set_session(_session(clock(), version=3), expected_version=1) is False
        assert store.get_session("dev-1").version == 2
    
    def test_ledger_version_check(self, store, clock):
        entry = LedgerEntry(target_id="u2", at=clock())
        first = ActionLedger(actor_id="u1", action_type="follow", entries=[entry], version=1)
        
        assert store.compare_and_set_action_ledger(first, expected_version=0) is True
        assert store.compare_and_set_action_ledger(first, expected_version=0) is False
        assert store.get_action_ledger("u1", "follow").entries == [entry]
    
    def test_returned_ledger_is_a_copy(self, store, clock):
        ledger = ActionLedger(actor_id="u1", action_type="follow", version=1)
        store.compare_and_set_action_ledger(ledger, expected_version=0)
        
        store.get_action_ledger("u1", "follow").entries.append(LedgerEntry(target_id="x", at=clock()))
        
        assert store.get_action_ledger("u1", "follow").entries == []


class TestFlags:
    
    def test_one_open_flag_per_subject(self, store, clock):
        flag = ReviewFlag(
            subject_id="dev-1", subject_type=SubjectType.DEVICE,
            severity=RiskLevel.HIGH, reason="anomaly_detected", flagged_at=clock(),
        )
        duplicate = flag.model_copy(update={"flag_id": "flag_other"})
        
        assert store.create_flag_if_no_open(flag)[1] is True
        existing, created = store.create_flag_if_no_open(duplicate)
        
        assert created is False
        assert existing.flag_id == flag.flag_id
    
    def test_close_releases_subject(self, store, clock):
        flag = ReviewFlag(
            subject_id="dev-1", subject_type=SubjectType.DEVICE,
            severity=RiskLevel.HIGH, reason="anomaly_detected", flagged_at=clock(),
        )
        store.create_flag_if_no_open(flag)
        
        closed = flag.model_copy(update={"review_status": ReviewStatus.REVIEWED, "reviewed_at": clock()})
        
        assert store.close_flag(closed) is True
        assert store.close_flag(closed) is False
        assert store.get_open_flag(SubjectType.DEVICE, "dev-1") is None


class TestFactory:
    
    def test_memory_backend_by_default(self):
        assert isinstance(create_trust_store(Config()), InMemoryTrustStore)
    
    def test_explicit_backend(self):
        store = create_trust_store(Config(), backend=StorageBackend.MEMORY)
        
        assert isinstance(store, InMemoryTrustStore)
