"""Aggressiveness levels and the threshold profiles derived from them.

A profile is a pure function of the resolved level, the community's
confidence floor, the global ceilings and any per-entity override. It is
computed per evaluation and never cached, because reputation and overrides
can change between calls.
"""

from __future__ import annotations

from dataclasses import dataclass

from raidshield.logging import get_logger
from raidshield.moderation.models import EntityOverride
from raidshield.moderation.thresholds import RaidConfig, SpamConfig

log = get_logger("raidshield.moderation.profiles")

MIN_LEVEL = 1
MAX_LEVEL = 10

# Reputation adjustments to the community default level
TRUSTED_REPUTATION = 70
UNTRUSTED_REPUTATION = 40


@dataclass(frozen=True)
class SpamThresholds:
    max_messages_per_minute: int
    max_duplicate_messages: int
    max_mentions: int
    max_links: int
    cooldown_seconds: int


@dataclass(frozen=True)
class RaidThresholds:
    max_joins_per_minute: int
    min_account_age_days: int


@dataclass(frozen=True)
class AggressivenessProfile:
    """Effective thresholds for one evaluation."""

    level: int
    ai_confidence_threshold: float
    spam: SpamThresholds
    raid: RaidThresholds


# level: (ai threshold, msgs/min, duplicates, mentions, links, cooldown s, joins/min, min age days)
_LEVEL_TABLE: dict[int, tuple[float, int, int, int, int, int, int, int]] = {
    1: (0.95, 15, 5, 8, 5, 5, 12, 7),
    2: (0.90, 12, 4, 7, 4, 5, 10, 10),
    3: (0.85, 10, 4, 6, 3, 6, 8, 12),
    4: (0.80, 8, 3, 5, 3, 8, 7, 13),
    5: (0.75, 7, 3, 4, 2, 9, 6, 14),
    6: (0.70, 6, 2, 4, 2, 10, 5, 16),
    7: (0.65, 5, 2, 3, 1, 12, 4, 18),
    8: (0.60, 4, 2, 3, 1, 15, 4, 21),
    9: (0.57, 3, 1, 2, 1, 20, 3, 25),
    10: (0.55, 3, 1, 2, 0, 20, 3, 30),
}


def clamp_level(level: int) -> int:
    return max(MIN_LEVEL, min(MAX_LEVEL, int(level)))


def normalize_ratio(value: float) -> float:
    """Interpret values above 1 as percentages (``85`` -> ``0.85``)."""
    return value / 100 if value > 1 else value


def resolve_level(
    base_level: int,
    *,
    reputation_score: int | None = None,
    override_level: int | None = None,
    protected: bool = False,
) -> int:
    """Pick the effective aggressiveness level for an entity.

    Order: globally protected entities get the minimum level, then an
    explicit per-entity override, then the community default adjusted by
    reputation.
    """
    if protected:
        return MIN_LEVEL
    if override_level is not None:
        return clamp_level(override_level)

    level = base_level
    if reputation_score is not None:
        if reputation_score >= TRUSTED_REPUTATION:
            level -= 2
        elif reputation_score < UNTRUSTED_REPUTATION:
            level += 1
    return clamp_level(level)


def resolve_profile(
    level: int,
    *,
    floor: float | None = None,
    override: EntityOverride | None = None,
    spam_ceiling: SpamConfig | None = None,
    raid_ceiling: RaidConfig | None = None,
) -> AggressivenessProfile:
    """Build the effective profile for *level*.

    Args:
        level: Aggressiveness level, clamped to 1-10.
        floor: Community confidence floor. Only ever raises the AI threshold,
            and is applied after any override.
        override: Per-entity numeric overrides. Invalid values are ignored.
        spam_ceiling: Global spam config; counts never exceed it.
        raid_ceiling: Global raid config; join caps never exceed it and the
            minimum account age never drops below it.

    Returns:
        A fresh :class:`AggressivenessProfile`.
    """
    level = clamp_level(level)
    ai, msgs, dups, mentions, links, cooldown, joins, min_age = _LEVEL_TABLE[level]

    if spam_ceiling is not None:
        msgs = min(msgs, spam_ceiling.max_messages_per_minute)
        dups = min(dups, spam_ceiling.max_duplicate_messages)
        mentions = min(mentions, spam_ceiling.max_mentions)
        links = min(links, spam_ceiling.max_links)
        cooldown = max(cooldown, spam_ceiling.cooldown_seconds)
    if raid_ceiling is not None:
        joins = min(joins, raid_ceiling.max_joins_per_minute)
        min_age = max(min_age, raid_ceiling.min_account_age_days)

    if override is not None:
        if override.ai_confidence_threshold is not None:
            value = normalize_ratio(override.ai_confidence_threshold)
            if 0.1 <= value <= 1.0:
                ai = value
            else:
                log.warning("override_rejected", field="ai_confidence_threshold", value=value)

        msgs = _validated(override.max_messages_per_minute, msgs, 1, "max_messages_per_minute")
        dups = _validated(override.max_duplicate_messages, dups, 1, "max_duplicate_messages")
        mentions = _validated(override.max_mentions, mentions, 0, "max_mentions")
        links = _validated(override.max_links, links, 0, "max_links")
        if override.has_spam_override:
            cooldown = max(5, 60 // msgs)

        joins = _validated(override.max_joins_per_minute, joins, 1, "max_joins_per_minute")
        min_age = _validated(override.min_account_age_days, min_age, 0, "min_account_age_days")

    if floor is not None:
        ai = max(ai, min(1.0, normalize_ratio(floor)))

    return AggressivenessProfile(
        level=level,
        ai_confidence_threshold=ai,
        spam=SpamThresholds(
            max_messages_per_minute=msgs,
            max_duplicate_messages=dups,
            max_mentions=mentions,
            max_links=links,
            cooldown_seconds=cooldown,
        ),
        raid=RaidThresholds(max_joins_per_minute=joins, min_account_age_days=min_age),
    )


def _validated(value: int | None, current: int, minimum: int, name: str) -> int:
    if value is None:
        return current
    if value < minimum:
        log.warning("override_rejected", field=name, value=value, minimum=minimum)
        return current
    return value
