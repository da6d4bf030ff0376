"""Rate and pattern spam checks.

Checks run in a fixed order and the first non-allow result wins. A
broadcast mention with few extra mentions returns an explicit ``allow``
flagged as non-abusive, which also ends the spam stage.
"""

from __future__ import annotations

import re

from raidshield.moderation.models import ModerationAction, ThreatType, Verdict
from raidshield.moderation.profiles import SpamThresholds

_REPEATED_CHAR = re.compile(r"(.)\1{4,}")
_BROADCAST_MENTION = re.compile(r"@(?:everyone|here)\b")
_USER_MENTION = re.compile(r"<@!?\d+>")
_ROLE_MENTION = re.compile(r"<@&\d+>")
_LINK = re.compile(r"https?://\S+")

UPPERCASE_RATIO_LIMIT = 0.5
_MASS_MENTION_USER_LIMIT = 3
_MASS_MENTION_ROLE_LIMIT = 2


def _spam(action: ModerationAction, confidence: float, reason: str, **evidence: object) -> Verdict:
    return Verdict(
        action=action,
        confidence=confidence,
        reason=reason,
        threat_type=ThreatType.SPAM,
        evidence=evidence,
    )


def check_spam(
    content: str,
    thresholds: SpamThresholds,
    *,
    messages_last_minute: int,
    duplicate_count: int,
) -> Verdict | None:
    """Run the spam checks against *content*.

    Args:
        content: Message text (already truncated).
        thresholds: Spam thresholds from the resolved profile.
        messages_last_minute: Messages by this entity in the last minute,
            including this one.
        duplicate_count: Identical messages in the window, including this one.

    Returns:
        A verdict, or ``None`` when nothing tripped.
    """
    run = _REPEATED_CHAR.search(content)
    if run:
        return _spam(
            ModerationAction.WARN, 0.95, "repeated_characters", sequence=run.group(0)[:20]
        )

    letters = [ch for ch in content if ch.isalpha()]
    if letters:
        ratio = sum(1 for ch in letters if ch.isupper()) / len(letters)
        if ratio > UPPERCASE_RATIO_LIMIT:
            return _spam(
                ModerationAction.WARN, 0.95, "excessive_uppercase", uppercase_ratio=round(ratio, 3)
            )

    if messages_last_minute > thresholds.max_messages_per_minute:
        return _spam(
            ModerationAction.MUTE,
            0.98,
            "message_rate_exceeded",
            messages_per_minute=messages_last_minute,
            limit=thresholds.max_messages_per_minute,
            cooldown_seconds=thresholds.cooldown_seconds,
        )

    duplicate_verdict = _check_duplicates(duplicate_count, thresholds.max_duplicate_messages)
    if duplicate_verdict is not None:
        return duplicate_verdict

    user_mentions = len(_USER_MENTION.findall(content))
    role_mentions = len(_ROLE_MENTION.findall(content))
    if _BROADCAST_MENTION.search(content):
        if user_mentions > _MASS_MENTION_USER_LIMIT or role_mentions > _MASS_MENTION_ROLE_LIMIT:
            return _spam(
                ModerationAction.BAN,
                0.95,
                "mass_mention_abuse",
                user_mentions=user_mentions,
                role_mentions=role_mentions,
            )
        return Verdict.allow(
            "broadcast_mention",
            is_mass_mention=True,
            user_mentions=user_mentions,
            role_mentions=role_mentions,
        )

    mention_count = content.count("@")
    if mention_count > thresholds.max_mentions:
        return _spam(
            ModerationAction.DELETE,
            0.95,
            "excessive_mentions",
            mentions=mention_count,
            limit=thresholds.max_mentions,
        )

    link_count = len(_LINK.findall(content))
    if link_count > thresholds.max_links:
        return _spam(
            ModerationAction.DELETE,
            0.95,
            "excessive_links",
            links=link_count,
            limit=thresholds.max_links,
        )

    return None


def _check_duplicates(count: int, tolerance: int) -> Verdict | None:
    # tolerance counts the current message, so 1 means no repeats at all
    if count > tolerance:
        return _spam(
            ModerationAction.KICK, 0.98, "duplicate_flood", duplicates=count, limit=tolerance
        )
    if count >= 3 and tolerance >= 3:
        return _spam(
            ModerationAction.MUTE, 0.95, "duplicate_messages", duplicates=count, limit=tolerance
        )
    if count >= 2 and tolerance >= 2:
        return _spam(
            ModerationAction.WARN, 0.92, "duplicate_messages", duplicates=count, limit=tolerance
        )
    return None
