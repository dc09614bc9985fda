"""Service layer - the trust layer facade and its collaborators."""

from veilguard.service.collaborators import ProfileDirectory, StaticProfileDirectory
from veilguard.service.trust_service import RequestOutcome, TrustService

__all__ = [
    "ProfileDirectory",
    "RequestOutcome",
    "StaticProfileDirectory",
    "TrustService",
]
