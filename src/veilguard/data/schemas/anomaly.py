"""Anomaly detection schemas - feature snapshot and scored output."""

from datetime import datetime
from typing import List
from uuid import uuid4

from pydantic import BaseModel, Field

from veilguard.core.types import RiskLevel


class FeatureSet(BaseModel):
    """Inputs used to score one device at one point in time.
    
    Scoring is a pure function of this snapshot.
    """
    device_token: str
    request_count: int = Field(default=0, ge=0)
    failed_auth_count: int = Field(default=0, ge=0)
    requests_last_hour: int = Field(default=0, ge=0, description="Requests in the trailing hour")
    requests_per_day: float = Field(default=0.0, ge=0.0, description="Lifetime average per day")
    avg_requests_per_hour: float = Field(default=0.0, ge=0.0, description="Lifetime average per hour")
    failed_auths_last_hour: int = Field(default=0, ge=0)
    failed_auth_rate: float = Field(
        default=0.0, ge=0.0, le=100.0,
        description="Failed auths as a percentage of requests in the trailing hour"
    )
    distinct_ip_count: int = Field(default=0, ge=0)
    distinct_user_agent_count: int = Field(default=0, ge=0)
    recent_event_count: int = Field(default=0, ge=0, description="Audit events in the trailing hour")
    baseline_requests_per_hour: float = Field(default=0.0, ge=0.0)
    baseline_spread: float = Field(default=1.0, gt=0.0)
    hours_since_first_seen: float = Field(default=0.0, ge=0.0)
    minutes_since_last_seen: float = Field(default=0.0, ge=0.0)
    is_suspicious: bool = False
    is_revoked: bool = False
    session_refresh_count: int = Field(default=0, ge=0)
    
    @property
    def request_rate_zscore(self) -> float:
        """Z-score of the trailing-hour request count against the population baseline."""
        return (self.requests_last_hour - self.baseline_requests_per_hour) / self.baseline_spread


class AnomalyScore(BaseModel):
    """Point-in-time detector output for a device."""
    score_id: str = Field(default_factory=lambda: f"scr_{uuid4().hex[:12]}")
    device_token: str
    score: int = Field(..., ge=0, le=100)
    risk_level: RiskLevel
    detected_anomalies: List[str] = Field(default_factory=list, description="Reason codes")
    feature_snapshot: FeatureSet
    created_at: datetime
