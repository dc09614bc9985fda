"""Trust Store - Abstraction for device trust state persistence.

This module provides an interface for storage backends, decoupling the
trust components from specific persistence mechanisms.

Design principles:
- Every mutation that can race is a single atomic primitive
  (conditional upsert, atomic increment or compare-and-set)
- No primitive holds a lock across a call back into application code
- Audit events for one device are returned in creation order
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from veilguard.core.types import ReviewStatus, Severity, SubjectType
from veilguard.data.schemas import (
    ActionLedger,
    ActionRecord,
    AnomalyScore,
    AuditEvent,
    Device,
    PersonaLink,
    ReviewFlag,
    Session,
)


class TrustStore(ABC):
    """Abstract base class for trust state storage backends.
    
    Implementations must be safe to share between threads and between
    service instances (for backends with external state).
    """
    
    # ========== DEVICES ==========
    
    @abstractmethod
    def upsert_device_on_request(
        self,
        device_token: str,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> Tuple[Device, Optional[Device]]:
        """Create the device on first sight, otherwise count one more request.
        
        Two concurrent first-sight calls for the same token must produce
        exactly one device with ``request_count == 2``.
        
        Args:
            device_token: Validated device token
            now: Request time
            ip_address: Source IP (not overwritten when None)
            user_agent: User agent (not overwritten when None)
            fingerprint: Secondary correlation key (not overwritten when None)
            
        Returns:
            Tuple of (device after the update, device before the update or
            None when it was just created)
        """
        pass
    
    @abstractmethod
    def get_device(self, device_token: str) -> Optional[Device]:
        pass
    
    @abstractmethod
    def list_devices_first_seen_since(self, since: datetime) -> List[Device]:
        """Devices first seen at or after ``since`` (used for the population baseline)."""
        pass
    
    @abstractmethod
    def increment_failed_auth(self, device_token: str, now: datetime) -> Optional[Device]:
        """Atomically count a failed authentication.
        
        Returns:
            Updated device, or None if the device does not exist
        """
        pass
    
    @abstractmethod
    def set_suspicious(self, device_token: str, value: bool) -> bool:
        """Set the suspicion flag.
        
        Returns:
            True if the stored value changed
        """
        pass
    
    @abstractmethod
    def revoke_device(self, device_token: str, reason: str, now: datetime) -> bool:
        """Revoke a device if it exists and is not already revoked.
        
        Returns:
            True if this call performed the revocation
        """
        pass
    
    @abstractmethod
    def unban_device(self, device_token: str) -> bool:
        """Clear revocation if the device is currently revoked.
        
        Returns:
            True if this call cleared the revocation
        """
        pass
    
    @abstractmethod
    def set_active_persona_if_unset(
        self, device_token: str, persona_id: str
    ) -> Optional[str]:
        """Bind a write persona only when none is bound yet.
        
        Returns:
            The persona bound after the call (``persona_id`` on success,
            the existing binding on conflict) or None if the device is unknown
        """
        pass
    
    @abstractmethod
    def clear_active_persona(self, device_token: str, persona_id: str) -> bool:
        """Unbind the write persona if it is currently ``persona_id``."""
        pass
    
    @abstractmethod
    def add_persona_link(self, link: PersonaLink) -> None:
        """Idempotently record that a device can reach a persona."""
        pass
    
    @abstractmethod
    def list_persona_links(self, device_token: str) -> List[PersonaLink]:
        pass
    
    # ========== REQUEST COUNTERS ==========
    
    @abstractmethod
    def increment_request_bucket(self, device_token: str, bucket_start: datetime) -> None:
        pass
    
    @abstractmethod
    def sum_request_buckets(self, device_token: str, since: datetime) -> int:
        """Total requests in buckets starting at or after ``since``."""
        pass
    
    @abstractmethod
    def purge_request_buckets(self, before: datetime) -> int:
        pass
    
    # ========== SESSIONS ==========
    
    @abstractmethod
    def get_session(self, device_token: str) -> Optional[Session]:
        pass
    
    @abstractmethod
    def create_session(self, session: Session) -> bool:
        """Store a session only if the device has none.
        
        Returns:
            True if created, False if a session already existed
        """
        pass
    
    @abstractmethod
    def compare_and_set_session(self, session: Session, expected_version: int) -> bool:
        """Replace the stored session if its version still equals ``expected_version``."""
        pass
    
    # ========== AUDIT EVENTS ==========
    
    @abstractmethod
    def append_audit_event(self, event: AuditEvent) -> None:
        """Append an event.
        
        Raises:
            TransientError: If the backend is temporarily unavailable
        """
        pass
    
    @abstractmethod
    def list_audit_events(
        self,
        device_token: str,
        since: Optional[datetime] = None,
        event_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEvent]:
        """Events for one device, oldest first."""
        pass
    
    @abstractmethod
    def purge_audit_events(self, severity: Severity, before: datetime) -> int:
        pass
    
    # ========== ANOMALY SCORES ==========
    
    @abstractmethod
    def put_anomaly_score(self, score: AnomalyScore) -> None:
        pass
    
    @abstractmethod
    def get_latest_anomaly_score(self, device_token: str) -> Optional[AnomalyScore]:
        pass
    
    @abstractmethod
    def list_anomaly_scores(self, device_token: str, limit: Optional[int] = None) -> List[AnomalyScore]:
        """Score history for a device, newest first."""
        pass
    
    @abstractmethod
    def purge_anomaly_scores(self, before: datetime) -> int:
        """Delete old scores, always keeping the latest score per device."""
        pass
    
    # ========== RATE LIMITING ==========
    
    @abstractmethod
    def get_action_ledger(self, actor_id: str, action_type: str) -> ActionLedger:
        """Return the ledger, or an empty version-0 ledger."""
        pass
    
    @abstractmethod
    def compare_and_set_action_ledger(self, ledger: ActionLedger, expected_version: int) -> bool:
        """Write ``ledger`` if the stored version equals ``expected_version``."""
        pass
    
    @abstractmethod
    def append_action_record(self, record: ActionRecord) -> None:
        pass
    
    @abstractmethod
    def list_action_records(
        self,
        actor_id: str,
        since: datetime,
        action_types: Optional[Sequence[str]] = None,
    ) -> List[ActionRecord]:
        """Action history for an actor, oldest first."""
        pass
    
    @abstractmethod
    def list_actors_with_actions(
        self, since: datetime, action_types: Sequence[str]
    ) -> List[str]:
        pass
    
    @abstractmethod
    def purge_action_records(self, before: datetime) -> int:
        pass
    
    # ========== REVIEW FLAGS ==========
    
    @abstractmethod
    def create_flag_if_no_open(self, flag: ReviewFlag) -> Tuple[ReviewFlag, bool]:
        """Create ``flag`` unless its subject already has an open flag.
        
        Returns:
            Tuple of (the open flag, True if it was created by this call)
        """
        pass
    
    @abstractmethod
    def get_flag(self, flag_id: str) -> Optional[ReviewFlag]:
        pass
    
    @abstractmethod
    def get_open_flag(self, subject_type: SubjectType, subject_id: str) -> Optional[ReviewFlag]:
        pass
    
    @abstractmethod
    def close_flag(self, flag: ReviewFlag) -> bool:
        """Persist a closed flag if the stored one is still open.
        
        Returns:
            True if the flag transitioned from open to ``flag.review_status``
        """
        pass
    
    @abstractmethod
    def list_flags(
        self, status: ReviewStatus, limit: Optional[int] = None
    ) -> List[ReviewFlag]:
        """Flags with a given status, most recent first."""
        pass
    
    @abstractmethod
    def count_flags_by_status(self) -> Dict[str, int]:
        pass
    
    @abstractmethod
    def purge_closed_flags(self, before: datetime) -> int:
        """Delete closed flags reviewed before ``before``. Open flags are never purged."""
        pass
