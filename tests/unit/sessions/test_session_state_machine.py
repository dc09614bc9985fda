"""Tests for the session state machine."""

from datetime import timedelta

import pytest

from veilguard.core.types import SessionState
from veilguard.data.schemas import Session
from veilguard.sessions import can_transition, evaluate_state


@pytest.fixture
def session(clock):
    now = clock()
    return Session(
        device_token="abc-1",
        created_at=now,
        expires_at=now + timedelta(hours=24),
        timeout_seconds=86400,
        last_activity_at=now,
    )


class TestEvaluateState:
    
    def test_no_session(self, clock):
        assert evaluate_state(None, False, clock()) is None
    
    def test_revoked_device_without_session(self, clock):
        assert evaluate_state(None, True, clock()) == SessionState.REVOKED
    
    def test_active_until_expiry(self, session, clock):
        assert evaluate_state(session, False, clock()) == SessionState.ACTIVE
        assert evaluate_state(session, False, session.expires_at - timedelta(seconds=1)) == SessionState.ACTIVE
    
    def test_expired_at_expiry_instant(self, session):
        assert evaluate_state(session, False, session.expires_at) == SessionState.EXPIRED
    
    def test_revocation_wins_over_time(self, session, clock):
        assert evaluate_state(session, True, clock()) == SessionState.REVOKED
    
    def test_revoked_session_stays_revoked(self, session, clock):
        revoked = session.model_copy(update={"state": SessionState.REVOKED})
        assert evaluate_state(revoked, False, clock()) == SessionState.REVOKED


class TestTransitions:
    
    @pytest.mark.parametrize("target", list(SessionState))
    def test_revoked_is_terminal(self, target):
        assert can_transition(SessionState.REVOKED, target) is (target == SessionState.REVOKED)
    
    def test_expired_can_be_reactivated(self):
        assert can_transition(SessionState.EXPIRED, SessionState.ACTIVE)
    
    def test_active_can_expire_or_be_revoked(self):
        assert can_transition(SessionState.ACTIVE, SessionState.EXPIRED)
        assert can_transition(SessionState.ACTIVE, SessionState.REVOKED)
