"""Audit Logger - Append-only record of security-relevant events.

Writes go straight to the trust store and are durable before ``log``
returns. Transient storage failures are retried with exponential backoff;
when the retry budget is exhausted ``AuditWriteError`` is raised so the
caller's operation fails instead of silently losing the record.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from veilguard.common.constants import AuditConstants
from veilguard.common.exceptions import AuditWriteError, TransientError
from veilguard.common.time_utils import Clock, utc_now
from veilguard.core.types import AuditEventType, Severity
from veilguard.data.schemas import AuditEvent
from veilguard.storage.base import TrustStore

logger = logging.getLogger(__name__)


class AuditLogIntegrityError(Exception):
    """Raised when a stored audit event no longer matches its hash."""
    
    def __init__(self, event_ids: List[str]):
        self.event_ids = event_ids
        super().__init__(f"Audit integrity check failed for {len(event_ids)} event(s)")


@dataclass
class RetryConfig:
    """Retry policy for audit writes.
    
    Attributes:
        max_attempts: Total attempts including the first one
        backoff_seconds: Base delay; attempt n waits backoff_seconds * 2**n
        max_backoff_seconds: Upper bound for a single delay
    """
    max_attempts: int = AuditConstants.WRITE_MAX_ATTEMPTS
    backoff_seconds: float = AuditConstants.WRITE_BACKOFF_SECONDS
    max_backoff_seconds: float = AuditConstants.WRITE_MAX_BACKOFF_SECONDS
    
    def delay_for(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** attempt), self.max_backoff_seconds)


class AuditLogger:
    """Records security events for devices and personas."""
    
    def __init__(
        self,
        store: TrustStore,
        clock: Optional[Clock] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize audit logger.
        
        Args:
            store: Trust store that persists events
            clock: Time source. Defaults to the system UTC clock.
            retry_config: Retry policy for transient write failures
            sleep: Sleep function used between retries (injectable for tests)
        """
        self.store = store
        self.clock = clock or utc_now
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep
    
    def log(
        self,
        event_type: Union[AuditEventType, str],
        severity: Severity = Severity.INFO,
        device_token: Optional[str] = None,
        persona_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> AuditEvent:
        """Append an audit event.
        
        Args:
            event_type: Event type (AuditEventType or a custom string)
            severity: info, warning, error or critical
            device_token: Device the event concerns, if any
            persona_id: Persona the event concerns, if any
            details: Structured payload
            ip_address: Source IP of the triggering request
            user_agent: User agent of the triggering request
            created_at: Event time. Defaults to now.
            
        Returns:
            The persisted event, including its content hash
            
        Raises:
            AuditWriteError: If the event could not be persisted
        """
        event = AuditEvent(
            device_token=device_token,
            persona_id=persona_id,
            event_type=event_type.value if isinstance(event_type, Enum) else event_type,
            severity=severity,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=created_at or self.clock(),
        ).with_hash()
        
        self._write_with_retry(event)
        logger.debug(
            f"Audit event {event.event_type} ({event.severity.value}) "
            f"recorded for device={device_token} persona={persona_id}"
        )
        return event
    
    def _write_with_retry(self, event: AuditEvent) -> None:
        last_error: Optional[TransientError] = None
        for attempt in range(self.retry_config.max_attempts):
            try:
                self.store.append_audit_event(event)
                return
            except TransientError as e:
                last_error = e
                if attempt + 1 >= self.retry_config.max_attempts:
                    break
                delay = self.retry_config.delay_for(attempt)
                logger.warning(
                    f"Audit write failed (attempt {attempt + 1}/"
                    f"{self.retry_config.max_attempts}), retrying in {delay:.2f}s: {e.message}"
                )
                self._sleep(delay)
        
        logger.critical(
            f"Audit event {event.event_id} ({event.event_type}) could not be persisted"
        )
        raise AuditWriteError(
            f"Failed to persist audit event after {self.retry_config.max_attempts} attempts",
            details={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "cause": last_error.message if last_error else None,
            },
        )
    
    def get_events(
        self,
        device_token: str,
        since: Optional[datetime] = None,
        event_types: Optional[Sequence[Union[AuditEventType, str]]] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEvent]:
        """Events for a device in creation order."""
        types = None
        if event_types is not None:
            types = [t.value if isinstance(t, Enum) else t for t in event_types]
        return self.store.list_audit_events(device_token, since=since, event_types=types, limit=limit)
    
    @staticmethod
    def find_tampered(events: Sequence[AuditEvent]) -> List[str]:
        """Return ids of events whose content no longer matches ``entry_hash``."""
        return [event.event_id for event in events if not event.verify()]
    
    def verify_integrity(self, device_token: str) -> bool:
        """Verify every stored event for a device.
        
        Raises:
            AuditLogIntegrityError: If any event fails verification
        """
        tampered = self.find_tampered(self.get_events(device_token))
        if tampered:
            raise AuditLogIntegrityError(tampered)
        return True
