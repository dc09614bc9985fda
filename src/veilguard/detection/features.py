"""Feature extraction for anomaly scoring."""

import logging
import threading
from datetime import datetime, timedelta
from typing import Optional, Tuple

import numpy as np

from veilguard.common.time_utils import Clock, utc_now
from veilguard.core.types import AuditEventType
from veilguard.data.schemas import Device, FeatureSet
from veilguard.detection.thresholds import AnomalyThresholds
from veilguard.registry.device_registry import DeviceRegistry
from veilguard.storage.base import TrustStore

logger = logging.getLogger(__name__)


def _hours_between(start: datetime, end: datetime) -> float:
    return max((end - start).total_seconds() / 3600.0, 0.0)


class FeatureExtractor:
    """Derives a FeatureSet for a device from counters and its audit trail."""
    
    def __init__(
        self,
        store: TrustStore,
        registry: DeviceRegistry,
        thresholds: AnomalyThresholds,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.registry = registry
        self.thresholds = thresholds
        self.clock = clock or utc_now
        self._baseline_lock = threading.Lock()
        self._baseline_cache: Optional[Tuple[datetime, float, float]] = None
    
    def population_baseline(self) -> Tuple[float, float]:
        """Mean and spread of lifetime requests/hour across recently active devices.
        
        Devices first seen inside the baseline window and not revoked are
        included. The spread is the population standard deviation, floored
        at ``baseline * spread_ratio`` and ``min_spread``.
        
        Returns:
            Tuple of (baseline requests per hour, spread)
        """
        settings = self.thresholds.baseline
        now = self.clock()
        
        with self._baseline_lock:
            cached = self._baseline_cache
            if cached is not None and (now - cached[0]).total_seconds() < settings.cache_seconds:
                return cached[1], cached[2]
        
        devices = self.store.list_devices_first_seen_since(now - timedelta(days=settings.window_days))
        rates = np.array(
            [
                d.request_count / max(_hours_between(d.first_seen_at, now), 1.0)
                for d in devices if not d.is_revoked
            ],
            dtype=float,
        )
        if rates.size == 0:
            baseline, std = settings.default_requests_per_hour, 0.0
        else:
            baseline, std = float(np.mean(rates)), float(np.std(rates))
        spread = max(std, baseline * settings.spread_ratio, settings.min_spread)
        
        with self._baseline_lock:
            self._baseline_cache = (now, baseline, spread)
        logger.debug(f"Population baseline: {baseline:.2f} req/h over {rates.size} devices (spread {spread:.2f})")
        return baseline, spread
    
    def invalidate_baseline(self) -> None:
        with self._baseline_lock:
            self._baseline_cache = None
    
    def compute_features(self, device: Device) -> FeatureSet:
        """Build the feature snapshot for one device.
        
        Args:
            device: Current device record
            
        Returns:
            FeatureSet used by the scoring rules
        """
        now = self.clock()
        window_start = now - timedelta(seconds=self.thresholds.recent_window_seconds)
        token = device.device_token
        
        events = self.store.list_audit_events(token)
        recent = [e for e in events if e.created_at >= window_start]
        failed_last_hour = sum(
            1 for e in recent if e.event_type == AuditEventType.FAILED_AUTH.value
        )
        distinct_ips = {e.ip_address for e in events if e.ip_address}
        distinct_agents = {e.user_agent for e in events if e.user_agent}
        if device.ip_address:
            distinct_ips.add(device.ip_address)
        if device.user_agent:
            distinct_agents.add(device.user_agent)
        
        requests_last_hour = self.registry.count_requests_since(token, window_start)
        failed_rate = 100.0 * failed_last_hour / max(requests_last_hour, failed_last_hour, 1)
        
        hours_known = _hours_between(device.first_seen_at, now)
        avg_per_hour = device.request_count / max(hours_known, 1.0)
        per_day = device.request_count / max(hours_known / 24.0, 1.0)
        
        baseline, spread = self.population_baseline()
        session = self.store.get_session(token)
        
        return FeatureSet(
            device_token=token,
            request_count=device.request_count,
            failed_auth_count=device.failed_auth_count,
            requests_last_hour=requests_last_hour,
            requests_per_day=round(per_day, 2),
            avg_requests_per_hour=round(avg_per_hour, 2),
            failed_auths_last_hour=failed_last_hour,
            failed_auth_rate=round(failed_rate, 2),
            distinct_ip_count=len(distinct_ips),
            distinct_user_agent_count=len(distinct_agents),
            recent_event_count=len(recent),
            baseline_requests_per_hour=round(baseline, 4),
            baseline_spread=round(spread, 4),
            hours_since_first_seen=round(hours_known, 2),
            minutes_since_last_seen=round(max((now - device.last_seen_at).total_seconds(), 0.0) / 60.0, 2),
            is_suspicious=device.is_suspicious,
            is_revoked=device.is_revoked,
            session_refresh_count=session.refresh_count if session else 0,
        )
