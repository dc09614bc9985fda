"""Session Manager - bounded-lifetime sessions bound to devices.

Validation never raises for an invalid session: callers get a boolean or
a SessionStatus and treat the request as unauthenticated. Only a revoked
device is surfaced as an error, and only on operations that would extend
a session.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from veilguard.common.constants import SessionConstants
from veilguard.common.exceptions import NotFoundError, RevokedError, TransientError
from veilguard.common.time_utils import Clock, utc_now
from veilguard.core.types import AuditEventType, SessionState, Severity
from veilguard.data.schemas import Device, Session, SessionStatus
from veilguard.governance.audit.logger import AuditLogger
from veilguard.registry.device_registry import DeviceRegistry
from veilguard.sessions.state_machine import can_transition, evaluate_state
from veilguard.storage.base import TrustStore

logger = logging.getLogger(__name__)


class SessionManager:
    """Issues, refreshes and evaluates device sessions."""
    
    def __init__(
        self,
        store: TrustStore,
        registry: DeviceRegistry,
        audit_logger: AuditLogger,
        clock: Optional[Clock] = None,
        default_timeout_hours: int = SessionConstants.DEFAULT_TIMEOUT_HOURS,
        refresh_ahead_seconds: int = SessionConstants.REFRESH_AHEAD_SECONDS,
        debounce_seconds: int = SessionConstants.REFRESH_DEBOUNCE_SECONDS,
        cas_max_attempts: int = SessionConstants.CAS_MAX_ATTEMPTS,
    ):
        """Initialize session manager.
        
        Args:
            store: Trust store
            registry: Device registry
            audit_logger: Audit logger
            clock: Time source
            default_timeout_hours: Session lifetime when neither caller nor device sets one
            refresh_ahead_seconds: Auto-refresh when remaining lifetime is at most this
            debounce_seconds: Minimum interval between two effective refreshes
            cas_max_attempts: Attempts for a contended compare-and-set
        """
        self.store = store
        self.registry = registry
        self.audit_logger = audit_logger
        self.clock = clock or utc_now
        self.default_timeout_hours = default_timeout_hours
        self.refresh_ahead = timedelta(seconds=refresh_ahead_seconds)
        self.debounce = timedelta(seconds=debounce_seconds)
        self.cas_max_attempts = cas_max_attempts
    
    def _timeout_seconds(self, device: Device, timeout_hours: Optional[int]) -> int:
        hours = timeout_hours or device.session_timeout_hours or self.default_timeout_hours
        return int(hours * 3600)
    
    # ========== ISSUE ==========
    
    def init_session(self, device: Device, timeout_hours: Optional[int] = None) -> Session:
        """Issue the device's session if it has none.
        
        An existing session is returned unchanged (its expiry is kept).
        A session left REVOKED by a since-unbanned device is replaced.
        
        Raises:
            RevokedError: If the device is revoked
        """
        if device.is_revoked:
            raise RevokedError(device.device_token, device.revoked_reason)
        
        existing = self.store.get_session(device.device_token)
        if existing is not None and existing.state != SessionState.REVOKED:
            return existing
        
        now = self.clock()
        timeout = self._timeout_seconds(device, timeout_hours)
        session = Session(
            device_token=device.device_token,
            state=SessionState.ACTIVE,
            created_at=now,
            expires_at=now + timedelta(seconds=timeout),
            timeout_seconds=timeout,
            last_activity_at=now,
            version=existing.version + 1 if existing else 1,
        )
        
        if existing is None:
            stored = self.store.create_session(session)
        else:
            stored = self.store.compare_and_set_session(session, existing.version)
        if not stored:
            # Another request issued it first.
            return self.store.get_session(device.device_token) or session
        
        self.audit_logger.log(
            AuditEventType.SESSION_INITIALIZED,
            Severity.INFO,
            device_token=device.device_token,
            details={"expires_at": session.expires_at.isoformat(), "timeout_seconds": timeout},
        )
        return session
    
    # ========== EVALUATE ==========
    
    def _current(self, device_token: str):
        """Load device and session and persist any state transition that is due.
        
        Returns:
            Tuple of (device or None, session or None, state or None)
        """
        device = self.store.get_device(device_token)
        if device is None:
            return None, None, None
        session = self.store.get_session(device_token)
        now = self.clock()
        state = evaluate_state(session, device.is_revoked, now)
        if session is not None and state is not None and state != session.state:
            session = self._transition(session, state)
        return device, session, state
    
    def _transition(self, session: Session, target: SessionState) -> Session:
        if not can_transition(session.state, target):
            return session
        updated = session.model_copy(update={"state": target, "version": session.version + 1})
        if not self.store.compare_and_set_session(updated, session.version):
            # Someone else moved it; their write is authoritative.
            return self.store.get_session(session.device_token) or session
        
        if target == SessionState.EXPIRED:
            self.audit_logger.log(
                AuditEventType.SESSION_EXPIRED,
                Severity.WARNING,
                device_token=session.device_token,
                details={"expired_at": session.expires_at.isoformat()},
            )
        logger.info(f"Session for {session.device_token}: {session.state.value} -> {target.value}")
        return updated
    
    def get_state(self, device_token: str) -> Optional[SessionState]:
        return self._current(device_token)[2]
    
    def is_valid(self, device_token: str) -> bool:
        """True only for an ACTIVE session on a non-revoked device."""
        return self.get_state(device_token) == SessionState.ACTIVE
    
    def get_status(self, device_token: str) -> SessionStatus:
        device, session, state = self._current(device_token)
        if session is None:
            return SessionStatus(device_token=device_token, valid=False, state=state)
        
        ttl = int((session.expires_at - self.clock()).total_seconds())
        valid = state == SessionState.ACTIVE
        return SessionStatus(
            device_token=device_token,
            valid=valid,
            state=state,
            expires_at=session.expires_at,
            ttl_seconds=max(ttl, 0) if valid else 0,
            last_activity_at=session.last_activity_at,
            refresh_count=session.refresh_count,
        )
    
    # ========== REFRESH ==========
    
    def refresh(self, device_token: str, timeout_hours: Optional[int] = None) -> datetime:
        """Extend a session.
        
        Refreshing within the debounce interval of the previous refresh is
        a no-op, and ``expires_at`` never moves backwards. An EXPIRED
        session is reactivated.
        
        Returns:
            The session's expiry after the call
            
        Raises:
            RevokedError: If the device (and therefore the session) is revoked
            NotFoundError: If the device or its session does not exist
            TransientError: If the update kept losing compare-and-set races
        """
        for _ in range(self.cas_max_attempts):
            device, session, state = self._current(device_token)
            if device is None:
                raise NotFoundError(f"Device not found: {device_token}", "device", device_token)
            if state == SessionState.REVOKED:
                raise RevokedError(device_token, device.revoked_reason)
            if session is None:
                raise NotFoundError(f"No session for device: {device_token}", "session", device_token)
            
            now = self.clock()
            if session.last_refreshed_at is not None and now - session.last_refreshed_at < self.debounce:
                logger.debug(f"Refresh for {device_token} debounced")
                return session.expires_at
            
            timeout = self._timeout_seconds(device, timeout_hours)
            new_expires_at = now + timedelta(seconds=timeout)
            if new_expires_at <= session.expires_at:
                return session.expires_at
            
            updated = session.model_copy(update={
                "state": SessionState.ACTIVE,
                "expires_at": new_expires_at,
                "timeout_seconds": timeout,
                "last_activity_at": now,
                "last_refreshed_at": now,
                "refresh_count": session.refresh_count + 1,
                "version": session.version + 1,
            })
            if self.store.compare_and_set_session(updated, session.version):
                self.audit_logger.log(
                    AuditEventType.SESSION_REFRESHED,
                    Severity.INFO,
                    device_token=device_token,
                    details={
                        "previous_expires_at": session.expires_at.isoformat(),
                        "expires_at": new_expires_at.isoformat(),
                        "refresh_count": updated.refresh_count,
                    },
                )
                return new_expires_at
        
        raise TransientError(
            f"Session refresh for {device_token} lost {self.cas_max_attempts} concurrent updates",
            operation="refresh_session",
        )
    
    def maybe_refresh(self, device_token: str) -> Optional[datetime]:
        """Refresh an ACTIVE session whose remaining lifetime is inside the refresh-ahead window.
        
        Returns:
            The new expiry if a refresh happened, else None
        """
        _, session, state = self._current(device_token)
        if session is None or state != SessionState.ACTIVE:
            return None
        if session.expires_at - self.clock() > self.refresh_ahead:
            return None
        
        previous = session.expires_at
        expires_at = self.refresh(device_token)
        return expires_at if expires_at != previous else None
    
    def touch(self, device_token: str) -> None:
        """Record activity on the session, at most once per debounce interval."""
        session = self.store.get_session(device_token)
        if session is None:
            return
        now = self.clock()
        if now - session.last_activity_at < self.debounce:
            return
        updated = session.model_copy(update={"last_activity_at": now, "version": session.version + 1})
        # Losing this race only means another request recorded activity first.
        self.store.compare_and_set_session(updated, session.version)
