"""Anomaly thresholds - rule table for additive risk scoring.

Thresholds are operator configuration loaded from YAML; the numbers in
this module are only the defaults used when a key is absent.
"""

from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from veilguard.common.constants import DetectionConstants
from veilguard.common.exceptions import ConfigurationError


class ScoreTier(BaseModel):
    """One tier of a rule: ``points`` are added when the feature exceeds ``above``."""
    above: float = Field(..., description="Threshold the feature must exceed")
    points: int = Field(..., ge=0, le=100)
    code: str = Field(..., description="Reason code reported when this tier matches")


class TieredRule(BaseModel):
    """A rule with mutually exclusive tiers; the highest matching tier counts.
    
    With ``inclusive`` the comparison is ``>=`` instead of ``>``.
    """
    tiers: List[ScoreTier] = Field(default_factory=list)
    inclusive: bool = False
    
    @field_validator("tiers")
    @classmethod
    def _sort_tiers(cls, tiers: List[ScoreTier]) -> List[ScoreTier]:
        return sorted(tiers, key=lambda t: t.above, reverse=True)
    
    def match(self, value: float) -> Optional[ScoreTier]:
        for tier in self.tiers:
            if value >= tier.above if self.inclusive else value > tier.above:
                return tier
        return None


def _rule(*tiers, inclusive: bool = False) -> TieredRule:
    return TieredRule(
        tiers=[ScoreTier(above=a, points=p, code=c) for a, p, c in tiers],
        inclusive=inclusive,
    )


class RiskBands(BaseModel):
    """Lower score bounds of each risk band."""
    critical: int = Field(default=70, ge=0, le=100)
    high: int = Field(default=50, ge=0, le=100)
    medium: int = Field(default=25, ge=0, le=100)
    
    @model_validator(mode="after")
    def _check_order(self) -> "RiskBands":
        if not self.critical >= self.high >= self.medium:
            raise ValueError("risk bands must satisfy critical >= high >= medium")
        return self


class BaselineSettings(BaseModel):
    """Population baseline used for the request-rate z-score."""
    window_days: int = Field(default=DetectionConstants.BASELINE_WINDOW_DAYS, gt=0)
    default_requests_per_hour: float = Field(
        default=DetectionConstants.DEFAULT_BASELINE_REQUESTS_PER_HOUR, ge=0.0
    )
    spread_ratio: float = Field(default=0.5, gt=0.0)
    min_spread: float = Field(default=1.0, gt=0.0)
    cache_seconds: int = Field(default=DetectionConstants.BASELINE_CACHE_SECONDS, ge=0)


class AnomalyThresholds(BaseModel):
    """Complete rule table for the anomaly detector."""
    version: str = "1.0.0"
    recent_window_seconds: int = Field(default=DetectionConstants.RECENT_WINDOW_SECONDS, gt=0)
    request_rate_zscore: TieredRule = Field(default_factory=lambda: _rule(
        (3, 30, "excessive_request_rate"),
        (2, 15, "high_request_rate"),
    ))
    failed_auth_rate: TieredRule = Field(default_factory=lambda: _rule(
        (50, 40, "very_high_failed_auth_rate"),
        (20, 25, "high_failed_auth_rate"),
        (10, 10, "elevated_failed_auth_rate"),
    ))
    failed_auth_burst: TieredRule = Field(default_factory=lambda: _rule(
        (10, 30, "failed_auth_burst"),
        inclusive=True,
    ))
    ip_changes: TieredRule = Field(default_factory=lambda: _rule(
        (10, 25, "frequent_ip_changes"),
        (5, 10, "multiple_ip_changes"),
    ))
    user_agent_changes: TieredRule = Field(default_factory=lambda: _rule(
        (5, 20, "frequent_user_agent_changes"),
        (2, 8, "multiple_user_agent_changes"),
    ))
    recent_events: TieredRule = Field(default_factory=lambda: _rule(
        (100, 30, "burst_activity"),
        (50, 15, "high_recent_activity"),
    ))
    daily_requests: TieredRule = Field(default_factory=lambda: _rule(
        (10000, 35, "extremely_high_daily_requests"),
        (5000, 20, "very_high_daily_requests"),
    ))
    previously_suspicious_points: int = Field(default=20, ge=0, le=100)
    bands: RiskBands = Field(default_factory=RiskBands)
    baseline: BaselineSettings = Field(default_factory=BaselineSettings)


def load_thresholds(path: Optional[Union[str, Path]] = None) -> AnomalyThresholds:
    """Load thresholds from YAML.
    
    Args:
        path: YAML file. Built-in defaults are returned when None.
        
    Raises:
        FileNotFoundError: If ``path`` does not exist
        ConfigurationError: If the file does not validate
    """
    if path is None:
        return AnomalyThresholds()
    
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Threshold file not found: {path}")
    
    with open(path, "r") as f:
        raw_config = yaml.safe_load(f) or {}
    
    try:
        return AnomalyThresholds.model_validate(raw_config)
    except ValueError as e:
        raise ConfigurationError(f"Invalid anomaly thresholds in {path}: {e}")
