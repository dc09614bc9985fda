"""Anomaly detection - deterministic rule-based device scoring."""

from veilguard.detection.detector import AnomalyDetector, band_for, score_features
from veilguard.detection.features import FeatureExtractor
from veilguard.detection.thresholds import (
    AnomalyThresholds,
    RiskBands,
    ScoreTier,
    TieredRule,
    load_thresholds,
)

__all__ = [
    "AnomalyDetector",
    "AnomalyThresholds",
    "FeatureExtractor",
    "RiskBands",
    "ScoreTier",
    "TieredRule",
    "band_for",
    "load_thresholds",
    "score_features",
]
