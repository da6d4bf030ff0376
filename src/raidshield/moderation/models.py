"""Data models for the moderation decision pipeline."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class ModerationAction(StrEnum):
    """Action the connector should execute for a verdict."""

    ALLOW = "allow"
    WARN = "warn"
    MUTE = "mute"
    KICK = "kick"
    BAN = "ban"
    DELETE = "delete"
    SANITIZE_MENTIONS = "sanitize_mentions"


class ThreatType(StrEnum):
    """Categories of detected abuse."""

    NONE = "none"
    SPAM = "spam"
    RAID = "raid"
    BYPASS = "bypass"
    NSFW = "nsfw"
    MALICIOUS = "malicious"
    PROFANITY = "profanity"
    COORDINATED_ATTACK = "coordinated_attack"
    OVERSIZED_CONTENT = "oversized_content"
    HARMFUL_CONTENT = "harmful_content"


class Severity(StrEnum):
    """Threat severity as reported by the classifier or derived from an action."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Reputation delta applied by the caller for each action
_ACTION_PENALTIES: dict[ModerationAction, int] = {
    ModerationAction.ALLOW: 0,
    ModerationAction.WARN: -5,
    ModerationAction.DELETE: -10,
    ModerationAction.SANITIZE_MENTIONS: -10,
    ModerationAction.MUTE: -15,
    ModerationAction.KICK: -25,
    ModerationAction.BAN: -40,
}

_RAID_PENALTIES: dict[ModerationAction, int] = {
    ModerationAction.KICK: -30,
    ModerationAction.BAN: -50,
}

_ACTION_SEVERITY: dict[ModerationAction, Severity] = {
    ModerationAction.ALLOW: Severity.LOW,
    ModerationAction.WARN: Severity.LOW,
    ModerationAction.DELETE: Severity.MEDIUM,
    ModerationAction.SANITIZE_MENTIONS: Severity.MEDIUM,
    ModerationAction.MUTE: Severity.MEDIUM,
    ModerationAction.KICK: Severity.HIGH,
    ModerationAction.BAN: Severity.CRITICAL,
}


@dataclass(frozen=True)
class Verdict:
    """The pipeline's decision for a single inbound event."""

    action: ModerationAction
    confidence: float  # 0.0 - 1.0
    reason: str
    threat_type: ThreatType = ThreatType.NONE
    evidence: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Read-only copy; callers keep ownership of the mapping they passed in
        object.__setattr__(self, "evidence", MappingProxyType(dict(self.evidence)))

    @property
    def is_allow(self) -> bool:
        return self.action == ModerationAction.ALLOW

    @property
    def reputation_penalty(self) -> int:
        """Reputation delta the caller should apply (zero or negative)."""
        if self.threat_type == ThreatType.RAID and self.action in _RAID_PENALTIES:
            return _RAID_PENALTIES[self.action]
        return _ACTION_PENALTIES[self.action]

    @property
    def severity(self) -> Severity:
        return _ACTION_SEVERITY[self.action]

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "confidence": round(self.confidence, 4),
            "reason": self.reason,
            "threat_type": self.threat_type.value,
            "evidence": dict(self.evidence),
        }

    @classmethod
    def allow(cls, reason: str = "no_threat_detected", **evidence: Any) -> Verdict:
        return cls(
            action=ModerationAction.ALLOW,
            confidence=0.0,
            reason=reason,
            evidence=evidence,
        )


@dataclass(frozen=True)
class Attachment:
    """A file attached to an inbound message."""

    url: str
    content_type: str | None = None
    filename: str = ""
    size: int | None = None  # bytes, when the platform reports it


@dataclass
class ReputationRecord:
    """Reputation of an entity inside one community."""

    score: int = 50  # 0 - 100
    violations: int = 0
    positive_actions: int = 0


@dataclass
class CommunityConfig:
    """Per-community moderation settings."""

    aggressiveness_level: int = 5
    ai_confidence_floor: float | None = None


@dataclass
class EntityOverride:
    """Operator-set overrides for a single entity in a community.

    Every field is optional; only the fields that are set take precedence
    over the level-derived profile.
    """

    aggressiveness_level: int | None = None
    ai_confidence_threshold: float | None = None
    max_messages_per_minute: int | None = None
    max_duplicate_messages: int | None = None
    max_mentions: int | None = None
    max_links: int | None = None
    max_joins_per_minute: int | None = None
    min_account_age_days: int | None = None

    @property
    def has_spam_override(self) -> bool:
        return any(
            value is not None
            for value in (
                self.max_messages_per_minute,
                self.max_duplicate_messages,
                self.max_mentions,
                self.max_links,
            )
        )


@dataclass
class ThreatRecord:
    """Historical audit record of a verdict."""

    entity_id: str
    community_id: str
    threat_type: ThreatType
    action: str  # a ModerationAction value, or "observed" under shadow mode
    confidence: float
    severity: Severity
    reason: str = ""
    content: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_verdict(
        cls,
        verdict: Verdict,
        *,
        entity_id: str,
        community_id: str,
        content: str | None = None,
        action: str | None = None,
        timestamp: datetime | None = None,
    ) -> ThreatRecord:
        return cls(
            entity_id=entity_id,
            community_id=community_id,
            threat_type=verdict.threat_type,
            action=action or verdict.action.value,
            confidence=verdict.confidence,
            severity=verdict.severity,
            reason=verdict.reason,
            content=content,
            metadata=dict(verdict.evidence),
            timestamp=timestamp or datetime.now(UTC),
        )


@dataclass
class BypassPattern:
    """A named evasion technique known to the bypass classifier."""

    name: str
    pattern: str
    technique: str = ""
    countermeasure: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class IncidentRecord:
    """Operational incident such as a circuit failover."""

    kind: str
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


# ---------------------------------------------------------------------------
# Classifier results
# ---------------------------------------------------------------------------


@dataclass
class BypassClassification:
    is_bypass: bool = False
    confidence: float = 0.0
    technique: str = ""
    pattern: str = ""
    countermeasure: str = ""


@dataclass
class ContentClassification:
    confidence: float = 0.0
    threat_level: Severity | None = None
    threat_type: str = ""
    reasoning: str = ""


@dataclass
class ImageClassification:
    is_nsfw: bool = False
    confidence: float = 0.0
    categories: list[str] = field(default_factory=list)
