"""Custom exceptions for Veilguard.

Provides a hierarchy of exceptions for different error types.
All Veilguard exceptions inherit from VeilguardException.

ValidationError and PolicyDeniedError are expected, user-facing outcomes.
RevokedError and TransientError are operational failures.
"""

from typing import Any, Dict, Optional


class VeilguardException(Exception):
    """Base exception for all Veilguard errors.
    
    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """
    
    def __init__(
        self,
        message: str,
        code: str = "VEILGUARD_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(VeilguardException):
    """Raised when configuration is invalid or missing."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIG_ERROR", details=details)


class ValidationError(VeilguardException):
    """Raised when a token or other input is malformed."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class NotFoundError(VeilguardException):
    """Raised when a lookup requires an entity that does not exist."""
    
    def __init__(
        self,
        message: str,
        entity_type: str,
        entity_id: str,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["entity_type"] = entity_type
        details["entity_id"] = entity_id
        super().__init__(message, code="NOT_FOUND", details=details)


class PolicyDeniedError(VeilguardException):
    """Raised when a rate limit, churn guard or account gate denies an action.
    
    Attributes:
        reason: Human-readable reason shown to the user
        policy_code: Machine-checkable code of the failing check
    """
    
    def __init__(
        self,
        reason: str,
        policy_code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["policy_code"] = policy_code
        self.reason = reason
        self.policy_code = policy_code
        super().__init__(reason, code="POLICY_DENIED", details=details)


class RevokedError(VeilguardException):
    """Raised when a revoked device token is used. Always surfaced."""
    
    def __init__(self, device_token: str, reason: Optional[str] = None):
        super().__init__(
            f"Device token has been revoked: {reason or 'no reason given'}",
            code="DEVICE_REVOKED",
            details={"device_token": device_token, "revoked_reason": reason},
        )
        self.device_token = device_token
        self.revoked_reason = reason


class TransientError(VeilguardException):
    """Raised when storage is unavailable, throttled or times out."""
    
    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if operation:
            details["operation"] = operation
        super().__init__(message, code="TRANSIENT_ERROR", details=details)


class AuditWriteError(VeilguardException):
    """Raised when an audit event could not be persisted after retries."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="AUDIT_ERROR", details=details)
