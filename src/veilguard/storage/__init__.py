"""Storage layer - trust state persistence backends."""

from veilguard.storage.base import TrustStore
from veilguard.storage.memory import InMemoryTrustStore
from veilguard.storage.factory import create_trust_store

__all__ = [
    "TrustStore",
    "InMemoryTrustStore",
    "create_trust_store",
]
