"""Veilguard - Device trust layer for pseudonymous social platforms."""

__version__ = "0.1.0"
__author__ = "Veilguard Team"

# Core exports
from veilguard.core.types import RiskLevel, SessionState, Severity

__all__ = [
    "RiskLevel",
    "SessionState",
    "Severity",
]
