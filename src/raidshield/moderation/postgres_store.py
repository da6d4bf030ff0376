"""PostgreSQL-backed historical record store.

Follows the usual ``asyncpg.Pool`` pattern: one pool per process, the
schema bootstrapped with ``CREATE TABLE IF NOT EXISTS`` on ``initialize()``.
"""

from __future__ import annotations

import json
from typing import Any

import asyncpg  # type: ignore[import-not-found,import-untyped]

from raidshield.logging import get_logger
from raidshield.moderation.models import (
    BypassPattern,
    CommunityConfig,
    EntityOverride,
    IncidentRecord,
    ReputationRecord,
    Severity,
    ThreatRecord,
    ThreatType,
)
from raidshield.moderation.store import MAX_REPUTATION, MIN_REPUTATION

log = get_logger("raidshield.moderation.postgres_store")

# ---------------------------------------------------------------------------
# SQL schema
# ---------------------------------------------------------------------------
_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS threat_records (
    id              BIGSERIAL    PRIMARY KEY,
    entity_id       TEXT         NOT NULL,
    community_id    TEXT         NOT NULL,
    threat_type     VARCHAR(40)  NOT NULL,
    action          VARCHAR(30)  NOT NULL,
    confidence      REAL         NOT NULL,
    severity        VARCHAR(10)  NOT NULL
                    CHECK (severity IN ('low', 'medium', 'high', 'critical')),
    reason          TEXT,
    content         TEXT,
    metadata        JSONB        NOT NULL DEFAULT '{}'::jsonb,
    created_at      TIMESTAMPTZ  NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS reputation (
    community_id      TEXT         NOT NULL,
    entity_id         TEXT         NOT NULL,
    score             INT          NOT NULL DEFAULT 50,
    violations        INT          NOT NULL DEFAULT 0,
    positive_actions  INT          NOT NULL DEFAULT 0,
    updated_at        TIMESTAMPTZ  NOT NULL DEFAULT now(),
    PRIMARY KEY (community_id, entity_id)
);

CREATE TABLE IF NOT EXISTS community_config (
    community_id          TEXT         PRIMARY KEY,
    aggressiveness_level  INT          NOT NULL DEFAULT 5
                          CHECK (aggressiveness_level BETWEEN 1 AND 10),
    ai_confidence_floor   REAL,
    updated_at            TIMESTAMPTZ  NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS entity_overrides (
    community_id  TEXT         NOT NULL,
    entity_id     TEXT         NOT NULL,
    overrides     JSONB        NOT NULL DEFAULT '{}'::jsonb,
    updated_at    TIMESTAMPTZ  NOT NULL DEFAULT now(),
    PRIMARY KEY (community_id, entity_id)
);

CREATE TABLE IF NOT EXISTS protected_entities (
    entity_id   TEXT         PRIMARY KEY,
    added_at    TIMESTAMPTZ  NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS bypass_patterns (
    name            TEXT         PRIMARY KEY,
    pattern         TEXT         NOT NULL,
    technique       TEXT,
    countermeasure  TEXT,
    created_at      TIMESTAMPTZ  NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS incidents (
    id          BIGSERIAL    PRIMARY KEY,
    kind        VARCHAR(40)  NOT NULL,
    description TEXT         NOT NULL,
    metadata    JSONB        NOT NULL DEFAULT '{}'::jsonb,
    created_at  TIMESTAMPTZ  NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_threat_records_created_at
    ON threat_records (created_at DESC);
CREATE INDEX IF NOT EXISTS idx_threat_records_entity
    ON threat_records (community_id, entity_id);
"""

_OVERRIDE_FIELDS = (
    "aggressiveness_level",
    "ai_confidence_threshold",
    "max_messages_per_minute",
    "max_duplicate_messages",
    "max_mentions",
    "max_links",
    "max_joins_per_minute",
    "min_account_age_days",
)


def _jsonb(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        loaded = json.loads(value)
        return loaded if isinstance(loaded, dict) else {}
    return dict(value or {})


def _row_to_record(row: asyncpg.Record) -> ThreatRecord:
    """Convert an ``asyncpg.Record`` to a :class:`ThreatRecord`."""
    try:
        threat_type = ThreatType(row["threat_type"])
    except ValueError:
        threat_type = ThreatType.NONE
    return ThreatRecord(
        entity_id=row["entity_id"],
        community_id=row["community_id"],
        threat_type=threat_type,
        action=row["action"],
        confidence=float(row["confidence"]),
        severity=Severity(row["severity"]),
        reason=row["reason"] or "",
        content=row["content"],
        metadata=_jsonb(row["metadata"]),
        timestamp=row["created_at"],
    )


class PostgresThreatStore:
    """PostgreSQL implementation of :class:`~raidshield.moderation.store.ThreatStore`."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None  # type: ignore[type-arg]

    async def initialize(self) -> None:
        """Create the connection pool and ensure the schema exists."""
        try:
            self._pool = await asyncpg.create_pool(dsn=self._dsn)
            log.info("postgres_pool_created", dsn=self._dsn.split("@")[-1])
        except (asyncpg.PostgresError, OSError) as exc:
            log.error("postgres_pool_creation_failed", error=str(exc))
            raise

        await self._ensure_schema()

    async def close(self) -> None:
        """Gracefully close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            log.info("postgres_pool_closed")

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def record_threat(self, record: ThreatRecord) -> None:
        await self._execute(
            """
            INSERT INTO threat_records
                (entity_id, community_id, threat_type, action, confidence,
                 severity, reason, content, metadata, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10)
            """,
            record.entity_id,
            record.community_id,
            record.threat_type.value,
            record.action,
            record.confidence,
            record.severity.value,
            record.reason,
            record.content,
            json.dumps(record.metadata, default=str),
            record.timestamp,
        )

    async def query_recent(self, limit: int) -> list[ThreatRecord]:
        """Most recent records first."""
        rows = await self._fetch(
            "SELECT * FROM threat_records ORDER BY created_at DESC LIMIT $1",
            limit,
        )
        return [_row_to_record(row) for row in rows]

    async def record_incident(self, incident: IncidentRecord) -> None:
        await self._execute(
            """
            INSERT INTO incidents (kind, description, metadata, created_at)
            VALUES ($1, $2, $3::jsonb, $4)
            """,
            incident.kind,
            incident.description,
            json.dumps(incident.metadata, default=str),
            incident.timestamp,
        )
        log.info("incident_recorded", kind=incident.kind, description=incident.description)

    # ------------------------------------------------------------------
    # Reputation
    # ------------------------------------------------------------------

    async def get_reputation(self, entity_id: str, community_id: str) -> ReputationRecord:
        row = await self._fetchrow(
            """
            SELECT score, violations, positive_actions FROM reputation
            WHERE community_id = $1 AND entity_id = $2
            """,
            community_id,
            entity_id,
        )
        if row is None:
            return ReputationRecord()
        return ReputationRecord(
            score=row["score"],
            violations=row["violations"],
            positive_actions=row["positive_actions"],
        )

    async def adjust_reputation(
        self, entity_id: str, community_id: str, delta: int
    ) -> ReputationRecord:
        row = await self._fetchrow(
            """
            INSERT INTO reputation (community_id, entity_id, score, violations, positive_actions)
            VALUES ($1, $2, GREATEST($4, LEAST($5, 50 + $3)),
                    CASE WHEN $3 < 0 THEN 1 ELSE 0 END,
                    CASE WHEN $3 > 0 THEN 1 ELSE 0 END)
            ON CONFLICT (community_id, entity_id) DO UPDATE
            SET score = GREATEST($4, LEAST($5, reputation.score + $3)),
                violations = reputation.violations + CASE WHEN $3 < 0 THEN 1 ELSE 0 END,
                positive_actions = reputation.positive_actions
                                   + CASE WHEN $3 > 0 THEN 1 ELSE 0 END,
                updated_at = now()
            RETURNING score, violations, positive_actions
            """,
            community_id,
            entity_id,
            delta,
            MIN_REPUTATION,
            MAX_REPUTATION,
        )
        return ReputationRecord(
            score=row["score"],  # type: ignore[index]
            violations=row["violations"],  # type: ignore[index]
            positive_actions=row["positive_actions"],  # type: ignore[index]
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def get_config(self, community_id: str) -> CommunityConfig | None:
        row = await self._fetchrow(
            """
            SELECT aggressiveness_level, ai_confidence_floor FROM community_config
            WHERE community_id = $1
            """,
            community_id,
        )
        if row is None:
            return None
        return CommunityConfig(
            aggressiveness_level=row["aggressiveness_level"],
            ai_confidence_floor=row["ai_confidence_floor"],
        )

    async def get_entity_override(
        self, entity_id: str, community_id: str
    ) -> EntityOverride | None:
        row = await self._fetchrow(
            """
            SELECT overrides FROM entity_overrides
            WHERE community_id = $1 AND entity_id = $2
            """,
            community_id,
            entity_id,
        )
        if row is None:
            return None
        data = _jsonb(row["overrides"])
        return EntityOverride(**{k: data[k] for k in _OVERRIDE_FIELDS if k in data})

    async def is_protected(self, entity_id: str) -> bool:
        value = await self._fetchval(
            "SELECT 1 FROM protected_entities WHERE entity_id = $1",
            entity_id,
        )
        return value is not None

    # ------------------------------------------------------------------
    # Bypass patterns
    # ------------------------------------------------------------------

    async def get_bypass_patterns(self) -> list[BypassPattern]:
        rows = await self._fetch("SELECT * FROM bypass_patterns ORDER BY created_at")
        return [
            BypassPattern(
                name=row["name"],
                pattern=row["pattern"],
                technique=row["technique"] or "",
                countermeasure=row["countermeasure"] or "",
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def create_bypass_pattern(self, pattern: BypassPattern) -> bool:
        status = await self._execute(
            """
            INSERT INTO bypass_patterns (name, pattern, technique, countermeasure, created_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (name) DO NOTHING
            """,
            pattern.name,
            pattern.pattern,
            pattern.technique,
            pattern.countermeasure,
            pattern.created_at,
        )
        return status.endswith(" 1")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_schema(self) -> None:
        """Run the DDL statements to create tables and indexes if absent."""
        try:
            async with self._pool.acquire() as conn:  # type: ignore[union-attr]
                await conn.execute(_SCHEMA_SQL)
            log.info("schema_ensured")
        except asyncpg.UniqueViolationError:
            # Another process created the schema concurrently
            log.info("schema_ensured", note="concurrent creation resolved")
        except asyncpg.PostgresError as exc:
            log.error("schema_creation_failed", error=str(exc))
            raise

    async def _fetchval(self, query: str, *args: Any) -> Any:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            return await conn.fetchval(query, *args)

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            return await conn.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            result: list[asyncpg.Record] = await conn.fetch(query, *args)
            return result

    async def _execute(self, query: str, *args: Any) -> str:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            result: str = await conn.execute(query, *args)
            return result
