"""Device Registry - owns devices and device-to-persona links."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from veilguard.common.constants import DeviceConstants
from veilguard.common.exceptions import NotFoundError
from veilguard.common.time_utils import Clock, utc_now
from veilguard.core.types import AuditEventType, Severity
from veilguard.data.schemas import Device, PersonaLink
from veilguard.governance.audit.logger import AuditLogger
from veilguard.registry.validation import TokenValidator
from veilguard.storage.base import TrustStore

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Resolves device tokens and tracks per-device counters.
    
    All counter updates go through the store's atomic primitives; the
    registry never writes back a value it read.
    """
    
    def __init__(
        self,
        store: TrustStore,
        audit_logger: AuditLogger,
        validator: Optional[TokenValidator] = None,
        clock: Optional[Clock] = None,
        bucket_seconds: int = DeviceConstants.REQUEST_BUCKET_SECONDS,
        suspicious_failed_auths_per_hour: int = DeviceConstants.SUSPICIOUS_FAILED_AUTHS_PER_HOUR,
        suspicious_requests_per_hour: int = DeviceConstants.SUSPICIOUS_REQUEST_COUNT,
    ):
        """Initialize registry.
        
        Args:
            store: Trust store
            audit_logger: Audit logger
            validator: Token format validator
            clock: Time source
            bucket_seconds: Width of the per-device request counter buckets
            suspicious_failed_auths_per_hour: Failed auths in an hour that mark a device suspicious
            suspicious_requests_per_hour: Requests in an hour that mark a device suspicious
        """
        self.store = store
        self.audit_logger = audit_logger
        self.validator = validator or TokenValidator()
        self.clock = clock or utc_now
        self.bucket_seconds = bucket_seconds
        self.suspicious_failed_auths_per_hour = suspicious_failed_auths_per_hour
        self.suspicious_requests_per_hour = suspicious_requests_per_hour
    
    def validate_token_format(self, device_token: Optional[str]) -> str:
        """Validate a token before any lookup or write.
        
        Raises:
            ValidationError: If the token is malformed or denylisted
        """
        return self.validator.validate(device_token)
    
    def _bucket_start(self, now: datetime) -> datetime:
        epoch = int(now.timestamp())
        return datetime.fromtimestamp(epoch - epoch % self.bucket_seconds, tz=timezone.utc)
    
    def resolve_or_create(
        self,
        device_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> Device:
        """Resolve a device, creating it on first sight.
        
        Every call counts as one request. Revoked devices are still
        resolved (and counted); enforcing revocation is up to the caller.
        
        Args:
            device_token: Client-supplied device token
            ip_address: Source IP of the request
            user_agent: User agent of the request
            fingerprint: Optional secondary correlation key
            
        Returns:
            The device after this request was counted
            
        Raises:
            ValidationError: If the token is malformed
        """
        self.validate_token_format(device_token)
        now = self.clock()
        
        device, previous = self.store.upsert_device_on_request(
            device_token, now, ip_address=ip_address, user_agent=user_agent, fingerprint=fingerprint
        )
        self.store.increment_request_bucket(device_token, self._bucket_start(now))
        
        if previous is None:
            logger.info(f"New device registered: {device_token}")
            self.audit_logger.log(
                AuditEventType.DEVICE_CREATED,
                Severity.INFO,
                device_token=device_token,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return device
        
        if ip_address and previous.ip_address and ip_address != previous.ip_address:
            self.audit_logger.log(
                AuditEventType.IP_CHANGED,
                Severity.INFO,
                device_token=device_token,
                details={"previous_ip": previous.ip_address, "new_ip": ip_address},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        if user_agent and previous.user_agent and user_agent != previous.user_agent:
            self.audit_logger.log(
                AuditEventType.USER_AGENT_CHANGED,
                Severity.INFO,
                device_token=device_token,
                details={"previous_user_agent": previous.user_agent, "new_user_agent": user_agent},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return device
    
    def get_device(self, device_token: str) -> Optional[Device]:
        return self.store.get_device(device_token)
    
    def require_device(self, device_token: str) -> Device:
        """Get a device that must exist.
        
        Raises:
            NotFoundError: If the device is unknown
        """
        device = self.store.get_device(device_token)
        if device is None:
            raise NotFoundError(f"Device not found: {device_token}", "device", device_token)
        return device
    
    def count_requests_since(self, device_token: str, since: datetime) -> int:
        """Requests counted in buckets that start at or after ``since``."""
        return self.store.sum_request_buckets(device_token, self._bucket_start(since))
    
    # ========== PERSONAS ==========
    
    def link_persona(self, device_token: str, persona_id: str) -> bool:
        """Link a persona and make it the device's write persona if none is set.
        
        An existing write persona is never replaced, so a device bound to
        one persona cannot be silently taken over by another.
        
        Returns:
            True if ``persona_id`` is the device's write persona after the call
            
        Raises:
            NotFoundError: If the device is unknown
        """
        self.require_device(device_token)
        self.store.add_persona_link(
            PersonaLink(device_token=device_token, persona_id=persona_id, linked_at=self.clock())
        )
        
        bound = self.store.set_active_persona_if_unset(device_token, persona_id)
        if bound == persona_id:
            self.audit_logger.log(
                AuditEventType.PERSONA_LINKED,
                Severity.INFO,
                device_token=device_token,
                persona_id=persona_id,
            )
            return True
        
        logger.warning(
            f"Device {device_token} already writes as {bound}; not rebinding to {persona_id}"
        )
        self.audit_logger.log(
            AuditEventType.PERSONA_LINK_CONFLICT,
            Severity.WARNING,
            device_token=device_token,
            persona_id=persona_id,
            details={"active_persona_id": bound},
        )
        return False
    
    def unlink_active_persona(self, device_token: str, persona_id: str) -> bool:
        """Release the write binding held by ``persona_id`` (e.g. after a recovery flow)."""
        return self.store.clear_active_persona(device_token, persona_id)
    
    def resolve_personas(self, device_token: str) -> List[str]:
        """Personas reachable from a device, write persona first."""
        device = self.store.get_device(device_token)
        if device is None:
            return []
        persona_ids = [link.persona_id for link in self.store.list_persona_links(device_token)]
        if device.active_persona_id:
            persona_ids = [device.active_persona_id] + [
                p for p in persona_ids if p != device.active_persona_id
            ]
        return persona_ids
    
    # ========== REVOCATION ==========
    
    def revoke(self, device_token: str, reason: str, actor_id: Optional[str] = None) -> bool:
        """Revoke a device. Revoking an already revoked device is a no-op.
        
        Returns:
            True if this call revoked the device
            
        Raises:
            NotFoundError: If the device is unknown
        """
        self.require_device(device_token)
        revoked = self.store.revoke_device(device_token, reason, self.clock())
        if not revoked:
            logger.debug(f"Device {device_token} already revoked")
            return False
        
        logger.warning(f"Device revoked: {device_token} ({reason})")
        self.audit_logger.log(
            AuditEventType.DEVICE_REVOKED,
            Severity.CRITICAL,
            device_token=device_token,
            details={"reason": reason, "revoked_by": actor_id},
        )
        return True
    
    def unban(self, device_token: str, reason: str, actor_id: str) -> bool:
        """Explicitly clear a revocation. The only path that un-revokes a device.
        
        Returns:
            True if this call cleared the revocation
        """
        self.require_device(device_token)
        cleared = self.store.unban_device(device_token)
        if cleared:
            logger.warning(f"Device unbanned: {device_token} by {actor_id} ({reason})")
            self.audit_logger.log(
                AuditEventType.DEVICE_UNBANNED,
                Severity.WARNING,
                device_token=device_token,
                details={"reason": reason, "unbanned_by": actor_id},
            )
        return cleared
    
    # ========== FAILED AUTH & SUSPICION ==========
    
    def record_failed_auth(
        self,
        device_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Device:
        """Count a failed authentication and re-evaluate suspicion.
        
        Raises:
            NotFoundError: If the device is unknown
        """
        self.validate_token_format(device_token)
        device = self.store.increment_failed_auth(device_token, self.clock())
        if device is None:
            raise NotFoundError(f"Device not found: {device_token}", "device", device_token)
        
        self.audit_logger.log(
            AuditEventType.FAILED_AUTH,
            Severity.WARNING,
            device_token=device_token,
            details={"failed_auth_count": device.failed_auth_count},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if self.check_suspicious(device_token):
            device = device.model_copy(update={"is_suspicious": True})
        return device
    
    def check_suspicious(self, device_token: str) -> bool:
        """Apply the quick suspicion heuristic and mark the device if it trips.
        
        A device is suspicious when it is revoked, had too many failed
        authentications in the last hour, or made too many requests in
        the last hour. This check only ever sets the flag; clearing it is
        done by the anomaly detector or an administrator.
        
        Returns:
            Whether the device is suspicious after the check
        """
        device = self.store.get_device(device_token)
        if device is None:
            return False
        if device.is_suspicious:
            return True
        
        now = self.clock()
        hour_ago = now - timedelta(hours=1)
        reason: Optional[str] = None
        details: Dict[str, Any] = {}
        
        if device.is_revoked:
            reason = "device_revoked"
        else:
            failed_last_hour = len(self.store.list_audit_events(
                device_token, since=hour_ago, event_types=[AuditEventType.FAILED_AUTH.value]
            ))
            if failed_last_hour >= self.suspicious_failed_auths_per_hour:
                reason = "failed_auth_threshold"
                details["failed_auths_last_hour"] = failed_last_hour
            else:
                requests_last_hour = self.count_requests_since(device_token, hour_ago)
                if requests_last_hour > self.suspicious_requests_per_hour:
                    reason = "request_volume_threshold"
                    details["requests_last_hour"] = requests_last_hour
        
        if reason is None:
            return False
        self.mark_suspicious(device_token, reason, details)
        return True
    
    def mark_suspicious(
        self, device_token: str, reason: str, details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Set the suspicion flag; audited only when it actually changes."""
        changed = self.store.set_suspicious(device_token, True)
        if changed:
            logger.info(f"Device marked suspicious: {device_token} ({reason})")
            self.audit_logger.log(
                AuditEventType.DEVICE_MARKED_SUSPICIOUS,
                Severity.WARNING,
                device_token=device_token,
                details={"reason": reason, **(details or {})},
            )
        return changed
    
    def clear_suspicious(
        self, device_token: str, reason: str, actor_id: Optional[str] = None
    ) -> bool:
        """Clear the suspicion flag; audited only when it actually changes."""
        changed = self.store.set_suspicious(device_token, False)
        if changed:
            logger.info(f"Suspicion cleared for device {device_token} ({reason})")
            self.audit_logger.log(
                AuditEventType.SUSPICIOUS_CLEARED,
                Severity.INFO,
                device_token=device_token,
                details={"reason": reason, "cleared_by": actor_id},
            )
        return changed
