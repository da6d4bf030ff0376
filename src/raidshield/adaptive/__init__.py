"""Adaptive tuning of detection thresholds from historical verdicts."""

from raidshield.adaptive.models import (
    AdjustmentSeverity,
    AttackPrediction,
    LearningReport,
    RiskLevel,
    ThreatPattern,
    ThresholdAdjustment,
    TuningResult,
)
from raidshield.adaptive.tuner import AdaptiveTuner, ThresholdConfigurable

__all__ = [
    "AdaptiveTuner",
    "AdjustmentSeverity",
    "AttackPrediction",
    "LearningReport",
    "RiskLevel",
    "ThreatPattern",
    "ThresholdAdjustment",
    "ThresholdConfigurable",
    "TuningResult",
]
