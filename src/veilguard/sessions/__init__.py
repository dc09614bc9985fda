"""Session management - per-device session lifecycle."""

from veilguard.sessions.manager import SessionManager
from veilguard.sessions.state_machine import can_transition, evaluate_state

__all__ = ["SessionManager", "can_transition", "evaluate_state"]
