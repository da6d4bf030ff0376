"""Forensic logging for moderation verdicts.

All WARNING+ events automatically land in the rotating error log file
(``logs/raidshield_error.log``).
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime

from raidshield.logging import get_logger
from raidshield.moderation.models import Verdict

log = get_logger("raidshield.moderation.forensics")


def log_moderation_event(
    *,
    event_type: str,
    entity_id: str,
    community_id: str,
    verdict: Verdict,
    content: str = "",
    processing_ms: float = 0.0,
) -> None:
    """Log a detailed forensic record for a non-allow verdict."""
    content_hash = hashlib.sha256(content.encode("utf-8")).hexdigest() if content else None

    log.warning(
        "moderation_event",
        event_type=event_type,
        entity_id=entity_id,
        community_id=community_id,
        timestamp=datetime.now(UTC).isoformat(),
        action=verdict.action.value,
        threat_type=verdict.threat_type.value,
        confidence=round(verdict.confidence, 4),
        reason=verdict.reason,
        evidence=dict(verdict.evidence),
        reputation_penalty=verdict.reputation_penalty,
        content_hash=content_hash,
        content_length=len(content),
        content_preview=content[:200] if content else None,
        processing_ms=round(processing_ms, 2),
    )
