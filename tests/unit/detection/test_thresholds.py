"""Tests for the anomaly threshold table."""

import pytest
import yaml

from veilguard.common.exceptions import ConfigurationError
from veilguard.detection import AnomalyThresholds, RiskBands, ScoreTier, TieredRule, load_thresholds


class TestTieredRule:
    
    def test_highest_matching_tier_wins(self):
        rule = TieredRule(tiers=[
            ScoreTier(above=10, points=10, code="elevated"),
            ScoreTier(above=50, points=40, code="very_high"),
            ScoreTier(above=20, points=25, code="high"),
        ])
        
        assert rule.match(60).code == "very_high"
        assert rule.match(30).code == "high"
        assert rule.match(11).code == "elevated"
        assert rule.match(10) is None
    
    def test_inclusive_comparison(self):
        rule = TieredRule(tiers=[ScoreTier(above=10, points=30, code="burst")], inclusive=True)
        
        assert rule.match(10).code == "burst"
        assert rule.match(9) is None


class TestRiskBands:
    
    def test_bands_must_be_ordered(self):
        with pytest.raises(ValueError):
            RiskBands(critical=40, high=50, medium=25)


class TestLoadThresholds:
    
    def test_shipped_file_loads(self, thresholds):
        assert thresholds.bands.critical == 70
        assert thresholds.failed_auth_rate.match(60).points == 40
        assert thresholds.failed_auth_burst.inclusive is True
        assert thresholds.baseline.window_days == 30
    
    def test_none_returns_defaults(self):
        assert load_thresholds(None) == AnomalyThresholds()
    
    def test_partial_file_keeps_defaults(self, tmp_path):
        path = tmp_path / "thresholds.yaml"
        path.write_text(yaml.safe_dump({"previously_suspicious_points": 5}))
        
        loaded = load_thresholds(path)
        
        assert loaded.previously_suspicious_points == 5
        assert loaded.bands.high == 50
    
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_thresholds(tmp_path / "missing.yaml")
    
    def test_invalid_file(self, tmp_path):
        path = tmp_path / "thresholds.yaml"
        path.write_text(yaml.safe_dump({"bands": {"critical": 10, "high": 50, "medium": 25}}))
        
        with pytest.raises(ConfigurationError):
            load_thresholds(path)
