"""Moderation decision pipeline.

Public API
----------
- :class:`DetectionPipeline`: ordered message and join checks producing a :class:`Verdict`
- :class:`ThresholdConfig`: shared spam/raid/media configuration
- :class:`ModerationState`: bounded per-instance tracking state
- :class:`ShadowMode`: observe-only mode for communities
- :class:`InMemoryThreatStore`: historical records (``postgres_store`` for PostgreSQL)
"""

from raidshield.moderation.errors import InvalidEventError, ModerationError
from raidshield.moderation.models import (
    Attachment,
    ModerationAction,
    Severity,
    ThreatRecord,
    ThreatType,
    Verdict,
)
from raidshield.moderation.pipeline import DetectionPipeline
from raidshield.moderation.profiles import AggressivenessProfile, resolve_level, resolve_profile
from raidshield.moderation.shadow import ShadowMode
from raidshield.moderation.state import ModerationState
from raidshield.moderation.store import InMemoryThreatStore, ThreatStore
from raidshield.moderation.thresholds import MediaConfig, RaidConfig, SpamConfig, ThresholdConfig

__all__ = [
    "AggressivenessProfile",
    "Attachment",
    "DetectionPipeline",
    "InMemoryThreatStore",
    "InvalidEventError",
    "MediaConfig",
    "ModerationAction",
    "ModerationError",
    "ModerationState",
    "RaidConfig",
    "Severity",
    "ShadowMode",
    "SpamConfig",
    "ThreatRecord",
    "ThreatStore",
    "ThreatType",
    "ThresholdConfig",
    "Verdict",
    "resolve_level",
    "resolve_profile",
]
