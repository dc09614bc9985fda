"""Audit Layer - durable, tamper-evident security event trail."""

from veilguard.governance.audit.logger import (
    AuditLogger,
    AuditLogIntegrityError,
    RetryConfig,
)

__all__ = [
    "AuditLogger",
    "AuditLogIntegrityError",
    "RetryConfig",
]
