"""Common utilities and shared components."""

from veilguard.common.exceptions import (
    VeilguardException,
    ConfigurationError,
    ValidationError,
    NotFoundError,
    PolicyDeniedError,
    RevokedError,
    TransientError,
    AuditWriteError,
)
from veilguard.common.logging import get_logger
from veilguard.common.time_utils import utc_now, ensure_utc

__all__ = [
    "VeilguardException",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "PolicyDeniedError",
    "RevokedError",
    "TransientError",
    "AuditWriteError",
    "get_logger",
    "utc_now",
    "ensure_utc",
]
