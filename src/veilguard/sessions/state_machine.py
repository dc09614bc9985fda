"""Session state machine.

One authoritative function decides a session's state; every caller goes
through it instead of re-deriving validity from timestamps.

    ACTIVE  --(now >= expires_at)-->  EXPIRED
    EXPIRED --(refresh)------------>  ACTIVE
    ACTIVE / EXPIRED --(device revoked)--> REVOKED   (terminal)
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from veilguard.core.types import SessionState
from veilguard.data.schemas import Session


ALLOWED_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.ACTIVE: frozenset({SessionState.ACTIVE, SessionState.EXPIRED, SessionState.REVOKED}),
    SessionState.EXPIRED: frozenset({SessionState.EXPIRED, SessionState.ACTIVE, SessionState.REVOKED}),
    SessionState.REVOKED: frozenset({SessionState.REVOKED}),
}


def evaluate_state(
    session: Optional[Session],
    device_revoked: bool,
    now: datetime,
) -> Optional[SessionState]:
    """Compute the current state of a device's session.
    
    Args:
        session: Stored session, or None if the device has none
        device_revoked: Whether the owning device is revoked
        now: Evaluation time
        
    Returns:
        The session state, or None when there is no session and the
        device is not revoked
    """
    if device_revoked:
        return SessionState.REVOKED
    if session is None:
        return None
    if session.state == SessionState.REVOKED:
        return SessionState.REVOKED
    if now >= session.expires_at:
        return SessionState.EXPIRED
    return SessionState.ACTIVE


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]
