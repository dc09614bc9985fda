"""Shared fixtures: a controllable clock and a fully wired in-memory trust layer."""

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from veilguard.common.config import Config, reset_config
from veilguard.detection import AnomalyDetector, AnomalyThresholds, load_thresholds
from veilguard.governance.audit import AuditLogger
from veilguard.governance.review import ReviewQueue
from veilguard.ratelimit import ActionRateLimiter, ChurnDetector, load_policies
from veilguard.registry import DeviceRegistry
from veilguard.service import StaticProfileDirectory, TrustService
from veilguard.sessions import SessionManager
from veilguard.storage import InMemoryTrustStore


CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"
T0 = datetime(2026, 1, 28, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; tests move time with ``advance``."""
    
    def __init__(self, start: datetime = T0):
        self._now = start
        self._lock = threading.Lock()
    
    def __call__(self) -> datetime:
        with self._lock:
            return self._now
    
    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self._now += timedelta(**kwargs)
            return self._now
    
    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Keep every test independent of the caller's VEILGUARD_* environment."""
    for name in ("VEILGUARD_STORAGE_BACKEND", "VEILGUARD_TOKEN_PATTERN", "VEILGUARD_TOKEN_DENYLIST"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryTrustStore()


@pytest.fixture
def audit_logger(store, clock):
    return AuditLogger(store, clock=clock, sleep=lambda _: None)


@pytest.fixture
def registry(store, audit_logger, clock):
    return DeviceRegistry(store, audit_logger, clock=clock)


@pytest.fixture
def sessions(store, registry, audit_logger, clock):
    return SessionManager(store, registry, audit_logger, clock=clock)


@pytest.fixture
def review_queue(store, audit_logger, clock):
    return ReviewQueue(store, audit_logger, clock=clock)


@pytest.fixture
def thresholds() -> AnomalyThresholds:
    return load_thresholds(CONFIG_DIR / "anomaly_thresholds.yaml")


@pytest.fixture
def detector(store, registry, audit_logger, thresholds, review_queue, clock):
    return AnomalyDetector(
        store, registry, audit_logger, thresholds=thresholds, review_queue=review_queue, clock=clock
    )


@pytest.fixture
def policies():
    return load_policies(CONFIG_DIR / "rate_limit_policies.yaml")


@pytest.fixture
def profiles(clock):
    directory = StaticProfileDirectory()
    directory.register("u1", created_at=clock() - timedelta(days=30))
    directory.register("u2", created_at=clock() - timedelta(days=30))
    directory.register("newbie", created_at=clock() - timedelta(days=2))
    return directory


@pytest.fixture
def rate_limiter(store, audit_logger, policies, clock, profiles):
    return ActionRateLimiter(
        store,
        audit_logger,
        policies=policies,
        clock=clock,
        account_created_provider=profiles.account_created_at,
        outstanding_provider=profiles.owned_count,
    )


@pytest.fixture
def churn_detector(store, review_queue, audit_logger, clock):
    return ChurnDetector(store, review_queue, audit_logger, clock=clock)


@pytest.fixture
def service(store, thresholds, policies, profiles, clock):
    return TrustService(
        store,
        thresholds=thresholds,
        policies=policies,
        profile_directory=profiles,
        clock=clock,
        config=Config(),
    )
