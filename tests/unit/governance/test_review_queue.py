"""Unit tests for the review queue."""

import threading

import pytest

from veilguard.common.exceptions import NotFoundError, ValidationError
from veilguard.core.types import AuditEventType, ReviewStatus, RiskLevel, SubjectType
from veilguard.governance import ReviewQueue


class TestFlagging:
    
    def test_creates_pending_flag(self, review_queue, clock):
        flag, created = review_queue.flag_for_review(
            "dev-1", SubjectType.DEVICE, RiskLevel.HIGH, "anomaly_detected", stats={"score": 60}
        )
        
        assert created is True
        assert flag.review_status == ReviewStatus.PENDING
        assert flag.flagged_at == clock()
        assert flag.stats_snapshot == {"score": 60}
        assert review_queue.get_open_flag(SubjectType.DEVICE, "dev-1").flag_id == flag.flag_id
    
    def test_reflagging_returns_existing(self, review_queue):
        first, _ = review_queue.flag_for_review("dev-1", SubjectType.DEVICE, RiskLevel.HIGH, "anomaly_detected")
        second, created = review_queue.flag_for_review(
            "dev-1", SubjectType.DEVICE, RiskLevel.CRITICAL, "anomaly_detected"
        )
        
        assert created is False
        assert second.flag_id == first.flag_id
    
    def test_device_and_persona_subjects_are_distinct(self, review_queue):
        review_queue.flag_for_review("same-id", SubjectType.DEVICE, RiskLevel.HIGH, "anomaly_detected")
        _, created = review_queue.flag_for_review("same-id", SubjectType.PERSONA, RiskLevel.HIGH, "churn_detected")
        
        assert created is True
    
    def test_concurrent_flagging_creates_one_flag(self, review_queue):
        barrier = threading.Barrier(20)
        created = []
        
        def flag():
            barrier.wait()
            created.append(
                review_queue.flag_for_review("dev-1", SubjectType.DEVICE, RiskLevel.HIGH, "anomaly_detected")[1]
            )
        
        threads = [threading.Thread(target=flag) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        
        assert created.count(True) == 1
        assert len(review_queue.get_pending_flags()) == 1
    
    def test_notifier_runs_once_per_new_flag(self, store, audit_logger, clock):
        notified = []
        queue = ReviewQueue(store, audit_logger, clock=clock, on_flag=notified.append)
        
        queue.flag_for_review("dev-1", SubjectType.DEVICE, RiskLevel.HIGH, "anomaly_detected")
        queue.flag_for_review("dev-1", SubjectType.DEVICE, RiskLevel.HIGH, "anomaly_detected")
        
        assert len(notified) == 1
    
    def test_failing_notifier_keeps_flag(self, store, audit_logger, clock):
        def broken(flag):
            raise RuntimeError("pager down")
        
        queue = ReviewQueue(store, audit_logger, clock=clock, on_flag=broken)
        flag, created = queue.flag_for_review("dev-1", SubjectType.DEVICE, RiskLevel.HIGH, "anomaly_detected")
        
        assert created is True
        assert queue.get_flag(flag.flag_id) is not None


class TestResolution:
    
    @pytest.fixture
    def flag(self, review_queue):
        return review_queue.flag_for_review("dev-1", SubjectType.DEVICE, RiskLevel.HIGH, "anomaly_detected")[0]
    
    def test_resolve_closes_flag(self, review_queue, flag, store, clock):
        closed = review_queue.resolve_flag(flag.flag_id, ReviewStatus.DISMISSED, "mod-7", notes="false positive")
        
        assert closed.review_status == ReviewStatus.DISMISSED
        assert closed.reviewed_by == "mod-7"
        assert closed.reviewed_at == clock()
        assert review_queue.get_open_flag(SubjectType.DEVICE, "dev-1") is None
        
        events = store.list_audit_events("dev-1", event_types=[AuditEventType.REVIEW_FLAG_RESOLVED.value])
        assert events[0].details["review_status"] == "dismissed"
    
    def test_subject_can_be_flagged_again_after_resolution(self, review_queue, flag):
        review_queue.resolve_flag(flag.flag_id, ReviewStatus.REVIEWED, "mod-7")
        
        new_flag, created = review_queue.flag_for_review(
            "dev-1", SubjectType.DEVICE, RiskLevel.HIGH, "anomaly_detected"
        )
        
        assert created is True
        assert new_flag.flag_id != flag.flag_id
    
    def test_cannot_resolve_twice(self, review_queue, flag):
        review_queue.resolve_flag(flag.flag_id, ReviewStatus.ACTIONED, "mod-7")
        
        with pytest.raises(ValidationError):
            review_queue.resolve_flag(flag.flag_id, ReviewStatus.DISMISSED, "mod-8")
    
    def test_cannot_resolve_to_pending(self, review_queue, flag):
        with pytest.raises(ValidationError):
            review_queue.resolve_flag(flag.flag_id, ReviewStatus.PENDING, "mod-7")
    
    def test_unknown_flag(self, review_queue):
        with pytest.raises(NotFoundError):
            review_queue.resolve_flag("flag_missing", ReviewStatus.REVIEWED, "mod-7")
    
    def test_stats(self, review_queue, flag):
        review_queue.flag_for_review("u9", SubjectType.PERSONA, RiskLevel.MEDIUM, "churn_detected")
        review_queue.resolve_flag(flag.flag_id, ReviewStatus.REVIEWED, "mod-7")
        
        assert review_queue.get_stats() == {"pending": 1, "reviewed": 1, "dismissed": 0, "actioned": 0}
