"""Unit tests for the spam checks."""

from __future__ import annotations

import pytest

from raidshield.moderation.models import ModerationAction, ThreatType
from raidshield.moderation.profiles import SpamThresholds
from raidshield.moderation.spam import check_spam


@pytest.fixture
def limits() -> SpamThresholds:
    return SpamThresholds(
        max_messages_per_minute=7,
        max_duplicate_messages=3,
        max_mentions=4,
        max_links=2,
        cooldown_seconds=9,
    )


def run(content: str, limits: SpamThresholds, *, rate: int = 1, duplicates: int = 1):
    return check_spam(content, limits, messages_last_minute=rate, duplicate_count=duplicates)


class TestPatternChecks:
    def test_clean_message(self, limits) -> None:
        assert run("hello everyone, how is it going?", limits) is None

    def test_repeated_characters(self, limits) -> None:
        verdict = run("nooooooo way", limits)
        assert verdict.action == ModerationAction.WARN
        assert verdict.confidence == 0.95
        assert verdict.reason == "repeated_characters"
        assert verdict.threat_type == ThreatType.SPAM

    def test_four_repeats_are_fine(self, limits) -> None:
        assert run("yesss", limits) is None

    def test_excessive_uppercase(self, limits) -> None:
        verdict = run("WHY IS NOBODY ANSWERING", limits)
        assert verdict.action == ModerationAction.WARN
        assert verdict.reason == "excessive_uppercase"

    def test_short_shouting_warns(self, limits) -> None:
        verdict = run("STOP NOW", limits)
        assert verdict.action == ModerationAction.WARN
        assert verdict.evidence["uppercase_ratio"] == 1.0

    def test_half_uppercase_is_fine(self, limits) -> None:
        assert run("Hi", limits) is None

    def test_no_letters_skips_uppercase_check(self, limits) -> None:
        assert run("12345 ?!", limits) is None


class TestRateAndDuplicates:
    def test_rate_exceeded_mutes_with_cooldown(self, limits) -> None:
        verdict = run("hi", limits, rate=8)
        assert verdict.action == ModerationAction.MUTE
        assert verdict.confidence == 0.98
        assert verdict.evidence["cooldown_seconds"] == 9

    def test_rate_at_limit_is_allowed(self, limits) -> None:
        assert run("hi", limits, rate=7) is None

    @pytest.mark.parametrize(
        ("duplicates", "action"),
        [
            (1, None),
            (2, ModerationAction.WARN),
            (3, ModerationAction.MUTE),
            (4, ModerationAction.KICK),
        ],
    )
    def test_duplicate_tiers(self, limits, duplicates, action) -> None:
        verdict = run("same text", limits, duplicates=duplicates)
        if action is None:
            assert verdict is None
        else:
            assert verdict.action == action

    def test_zero_tolerance_kicks_first_repeat(self) -> None:
        strict = SpamThresholds(3, 1, 2, 0, 20)
        verdict = check_spam("again", strict, messages_last_minute=2, duplicate_count=2)
        assert verdict.action == ModerationAction.KICK


class TestMentionsAndLinks:
    def test_broadcast_mention_allowed_and_flagged(self, limits) -> None:
        verdict = run("@everyone meeting starts now", limits)
        assert verdict.is_allow
        assert verdict.evidence["is_mass_mention"] is True

    def test_broadcast_with_many_users_bans(self, limits) -> None:
        content = "@here " + " ".join(f"<@{i}>" for i in range(100, 104))
        verdict = run(content, limits)
        assert verdict.action == ModerationAction.BAN
        assert verdict.reason == "mass_mention_abuse"

    def test_broadcast_with_many_roles_bans(self, limits) -> None:
        verdict = run("@everyone <@&1> <@&2> <@&3>", limits)
        assert verdict.action == ModerationAction.BAN

    def test_excessive_mentions_deleted(self, limits) -> None:
        verdict = run("@a @b @c @d @e", limits)
        assert verdict.action == ModerationAction.DELETE
        assert verdict.evidence["mentions"] == 5

    def test_excessive_links_deleted(self, limits) -> None:
        content = "http://a.example https://b.example https://c.example"
        verdict = run(content, limits)
        assert verdict.action == ModerationAction.DELETE
        assert verdict.reason == "excessive_links"

    def test_links_at_limit(self, limits) -> None:
        assert run("see https://a.example and https://b.example", limits) is None
