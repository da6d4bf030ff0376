"""Data models produced by the adaptive tuner."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from raidshield.moderation.models import Severity, ThreatType


class AdjustmentSeverity(StrEnum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ThresholdAdjustment:
    """Record of one configuration change made by the tuner."""

    config: str  # "spam", "raid", "media" or "bypass"
    parameter: str
    old_value: Any
    new_value: Any
    reason: str
    severity: AdjustmentSeverity
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": self.config,
            "parameter": self.parameter,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "reason": self.reason,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ThreatPattern:
    """Aggregate view of one threat type, recomputed on every run."""

    threat_type: ThreatType
    frequency: int
    dominant_severity: Severity
    top_techniques: list[str] = field(default_factory=list)
    peak_hours: list[int] = field(default_factory=list)
    affected_communities: list[str] = field(default_factory=list)
    repeat_offenders: list[str] = field(default_factory=list)
    last_seen: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "threat_type": self.threat_type.value,
            "frequency": self.frequency,
            "dominant_severity": self.dominant_severity.value,
            "top_techniques": list(self.top_techniques),
            "peak_hours": list(self.peak_hours),
            "affected_communities": list(self.affected_communities),
            "repeat_offenders": list(self.repeat_offenders),
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }


@dataclass
class AttackPrediction:
    threat_type: ThreatType
    probability: float  # 0.0 - 0.99
    confidence: int  # 0 - 99
    expected_timeframe: str
    recommended_actions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "threat_type": self.threat_type.value,
            "probability": round(self.probability, 4),
            "confidence": self.confidence,
            "expected_timeframe": self.expected_timeframe,
            "recommended_actions": list(self.recommended_actions),
        }


@dataclass
class TuningResult:
    """Outcome of a single tuner run."""

    records_analyzed: int
    patterns: dict[ThreatType, ThreatPattern]
    adjustments: list[ThresholdAdjustment]
    predictions: list[AttackPrediction]
    completed_at: datetime


@dataclass
class LearningReport:
    threats_analyzed: int
    patterns: list[ThreatPattern]
    predictions: list[AttackPrediction]
    recent_adjustments: list[ThresholdAdjustment]
    top_offenders: list[tuple[str, int]]
    risk_level: RiskLevel
    recommendations: list[str]
    generated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "threats_analyzed": self.threats_analyzed,
            "patterns": [p.to_dict() for p in self.patterns],
            "predictions": [p.to_dict() for p in self.predictions],
            "recent_adjustments": [a.to_dict() for a in self.recent_adjustments],
            "top_offenders": [
                {"entity_id": entity, "incidents": count} for entity, count in self.top_offenders
            ],
            "risk_level": self.risk_level.value,
            "recommendations": list(self.recommendations),
            "generated_at": self.generated_at.isoformat(),
        }
