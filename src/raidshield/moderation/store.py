"""Historical record store contract and the in-memory implementation."""

from __future__ import annotations

from collections import deque
from typing import Protocol

from raidshield.logging import get_logger
from raidshield.moderation.models import (
    BypassPattern,
    CommunityConfig,
    EntityOverride,
    IncidentRecord,
    ReputationRecord,
    ThreatRecord,
)

log = get_logger("raidshield.moderation.store")

MIN_REPUTATION = 0
MAX_REPUTATION = 100


class ThreatStore(Protocol):
    """Persistence collaborator used by the pipeline, engine and tuner.

    Writes are assumed at-least-once; duplicate audit records are tolerable.
    """

    async def record_threat(self, record: ThreatRecord) -> None: ...

    async def query_recent(self, limit: int) -> list[ThreatRecord]: ...

    async def get_reputation(self, entity_id: str, community_id: str) -> ReputationRecord: ...

    async def adjust_reputation(
        self, entity_id: str, community_id: str, delta: int
    ) -> ReputationRecord: ...

    async def get_config(self, community_id: str) -> CommunityConfig | None: ...

    async def get_entity_override(
        self, entity_id: str, community_id: str
    ) -> EntityOverride | None: ...

    async def is_protected(self, entity_id: str) -> bool: ...

    async def get_bypass_patterns(self) -> list[BypassPattern]: ...

    async def create_bypass_pattern(self, pattern: BypassPattern) -> bool: ...

    async def record_incident(self, incident: IncidentRecord) -> None: ...


def apply_reputation_delta(record: ReputationRecord, delta: int) -> ReputationRecord:
    """Return *record* adjusted by *delta*, clamped to 0-100."""
    return ReputationRecord(
        score=max(MIN_REPUTATION, min(MAX_REPUTATION, record.score + delta)),
        violations=record.violations + (1 if delta < 0 else 0),
        positive_actions=record.positive_actions + (1 if delta > 0 else 0),
    )


class InMemoryThreatStore:
    """Process-local store backed by bounded collections.

    Used when no database is configured, and as the store in tests.
    """

    def __init__(self, *, max_records: int = 10000) -> None:
        self._records: deque[ThreatRecord] = deque(maxlen=max_records)
        self._incidents: deque[IncidentRecord] = deque(maxlen=1000)
        self._reputation: dict[tuple[str, str], ReputationRecord] = {}
        self._configs: dict[str, CommunityConfig] = {}
        self._overrides: dict[tuple[str, str], EntityOverride] = {}
        self._protected: set[str] = set()
        self._bypass_patterns: dict[str, BypassPattern] = {}

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def record_threat(self, record: ThreatRecord) -> None:
        self._records.append(record)

    async def query_recent(self, limit: int) -> list[ThreatRecord]:
        """Most recent records first."""
        if limit <= 0:
            return []
        return list(reversed(self._records))[:limit]

    async def record_incident(self, incident: IncidentRecord) -> None:
        self._incidents.append(incident)
        log.info("incident_recorded", kind=incident.kind, description=incident.description)

    @property
    def incidents(self) -> list[IncidentRecord]:
        return list(self._incidents)

    # ------------------------------------------------------------------
    # Reputation
    # ------------------------------------------------------------------

    async def get_reputation(self, entity_id: str, community_id: str) -> ReputationRecord:
        record = self._reputation.get((community_id, entity_id))
        if record is None:
            return ReputationRecord()
        return ReputationRecord(record.score, record.violations, record.positive_actions)

    async def adjust_reputation(
        self, entity_id: str, community_id: str, delta: int
    ) -> ReputationRecord:
        current = await self.get_reputation(entity_id, community_id)
        updated = apply_reputation_delta(current, delta)
        self._reputation[(community_id, entity_id)] = updated
        return updated

    def set_reputation(self, entity_id: str, community_id: str, score: int) -> None:
        self._reputation[(community_id, entity_id)] = ReputationRecord(score=score)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def get_config(self, community_id: str) -> CommunityConfig | None:
        return self._configs.get(community_id)

    def set_config(self, community_id: str, config: CommunityConfig) -> None:
        self._configs[community_id] = config

    async def get_entity_override(
        self, entity_id: str, community_id: str
    ) -> EntityOverride | None:
        return self._overrides.get((community_id, entity_id))

    def set_entity_override(
        self, entity_id: str, community_id: str, override: EntityOverride | None
    ) -> None:
        if override is None:
            self._overrides.pop((community_id, entity_id), None)
        else:
            self._overrides[(community_id, entity_id)] = override

    async def is_protected(self, entity_id: str) -> bool:
        return entity_id in self._protected

    def set_protected(self, entity_id: str, protected: bool = True) -> None:
        if protected:
            self._protected.add(entity_id)
        else:
            self._protected.discard(entity_id)

    # ------------------------------------------------------------------
    # Bypass patterns
    # ------------------------------------------------------------------

    async def get_bypass_patterns(self) -> list[BypassPattern]:
        return list(self._bypass_patterns.values())

    async def create_bypass_pattern(self, pattern: BypassPattern) -> bool:
        """Store *pattern* unless the name is taken. Returns ``True`` if created."""
        if pattern.name in self._bypass_patterns:
            return False
        self._bypass_patterns[pattern.name] = pattern
        return True
