"""Unit tests for the AdaptiveTuner."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from raidshield.adaptive.models import AdjustmentSeverity, RiskLevel
from raidshield.adaptive.tuner import AdaptiveTuner, _expected_timeframe
from raidshield.moderation.models import Severity, ThreatRecord, ThreatType
from raidshield.moderation.thresholds import NsfwSensitivity, ThresholdConfig


def make_record(
    threat_type: ThreatType,
    timestamp: datetime,
    *,
    entity_id: str = "user-1",
    community_id: str = "guild-1",
    severity: Severity = Severity.MEDIUM,
    **metadata,
) -> ThreatRecord:
    return ThreatRecord(
        entity_id=entity_id,
        community_id=community_id,
        threat_type=threat_type,
        action="mute",
        confidence=0.95,
        severity=severity,
        metadata=metadata,
        timestamp=timestamp,
    )


async def seed(store, records: list[ThreatRecord]) -> None:
    for record in records:
        await store.record_threat(record)


@pytest.fixture
def tuner(store, thresholds, clock) -> AdaptiveTuner:
    return AdaptiveTuner(store, thresholds, interval_seconds=3600, now=clock.now)


# =========================================================================
# 1. Rules
# =========================================================================


class TestSpamRule:
    """Tests for the sustained-spam rule."""

    @pytest.mark.asyncio
    async def test_sustained_spam_tightens_rate_and_duplicates(
        self, tuner, store, thresholds, clock
    ) -> None:
        now = clock.now()
        await seed(
            store,
            [make_record(ThreatType.SPAM, now - timedelta(minutes=i)) for i in range(51)],
        )
        result = await tuner.run()

        assert thresholds.spam.max_messages_per_minute == 12
        assert thresholds.spam.max_duplicate_messages == 1
        rate = next(a for a in result.adjustments if a.parameter == "max_messages_per_minute")
        assert (rate.old_value, rate.new_value) == (15, 12)
        assert rate.severity == AdjustmentSeverity.MAJOR
        assert tuner.adjustment_history == result.adjustments

    @pytest.mark.asyncio
    async def test_fifty_records_do_not_trigger(self, tuner, store, thresholds, clock) -> None:
        now = clock.now()
        await seed(
            store,
            [make_record(ThreatType.SPAM, now - timedelta(minutes=i)) for i in range(50)],
        )
        result = await tuner.run()
        assert result.adjustments == []
        assert thresholds.spam.max_messages_per_minute == 15

    @pytest.mark.asyncio
    async def test_old_records_ignored(self, tuner, store, thresholds, clock) -> None:
        old = clock.now() - timedelta(days=2)
        await seed(store, [make_record(ThreatType.SPAM, old) for _ in range(60)])
        await tuner.run()
        assert thresholds.spam.max_messages_per_minute == 15

    @pytest.mark.asyncio
    async def test_rate_never_drops_below_one(self, store, clock) -> None:
        thresholds = ThresholdConfig()
        thresholds.update_spam_config({"max_messages_per_minute": 1})
        tuner = AdaptiveTuner(store, thresholds, now=clock.now)
        now = clock.now()
        await seed(store, [make_record(ThreatType.SPAM, now) for _ in range(51)])
        result = await tuner.run()
        assert thresholds.spam.max_messages_per_minute == 1
        assert [a.parameter for a in result.adjustments] == ["max_duplicate_messages"]


class TestRaidRule:
    @pytest.mark.asyncio
    async def test_sustained_raids_raise_account_age(self, tuner, store, thresholds, clock) -> None:
        now = clock.now()
        await seed(store, [make_record(ThreatType.RAID, now - timedelta(hours=i)) for i in range(11)])
        await tuner.run()
        assert thresholds.raid.min_account_age_days == 14

    @pytest.mark.asyncio
    async def test_account_age_capped(self, tuner, store, thresholds, clock) -> None:
        thresholds.update_raid_config({"min_account_age_days": 28})
        now = clock.now()
        await seed(store, [make_record(ThreatType.RAID, now) for _ in range(11)])
        await tuner.run()
        assert thresholds.raid.min_account_age_days == 30

    @pytest.mark.asyncio
    async def test_raid_techniques_merged_into_patterns(
        self, tuner, store, thresholds, clock
    ) -> None:
        now = clock.now()
        await seed(
            store,
            [make_record(ThreatType.RAID, now, technique="token_spam") for _ in range(2)]
            + [make_record(ThreatType.RAID, now, technique="discord.gg/")],
        )
        result = await tuner.run()
        assert "token_spam" in thresholds.raid.suspicious_patterns
        assert thresholds.raid.suspicious_patterns.count("discord.gg/") == 1
        merged = next(a for a in result.adjustments if a.parameter == "suspicious_patterns")
        assert merged.severity == AdjustmentSeverity.MODERATE

    @pytest.mark.asyncio
    async def test_username_raid_technique_learned(self, tuner, store, thresholds, clock) -> None:
        now = clock.now()
        await seed(
            store,
            [
                make_record(ThreatType.RAID, now, patterns=["cp", "leak"], technique="leak"),
                make_record(ThreatType.RAID, now, joins_per_minute=14, limit=12),
            ],
        )
        await tuner.run()
        assert "leak" in thresholds.raid.suspicious_patterns


class TestBypassAndNsfwRules:
    @pytest.mark.asyncio
    async def test_sustained_bypass_creates_patterns(self, tuner, store, clock) -> None:
        now = clock.now()
        await seed(
            store,
            [
                make_record(ThreatType.BYPASS, now, technique="zero_width" if i % 2 else "homoglyph")
                for i in range(101)
            ],
        )
        result = await tuner.run()
        names = {p.name for p in await store.get_bypass_patterns()}
        assert names == {"zero_width", "homoglyph"}
        assert sum(1 for a in result.adjustments if a.config == "bypass") == 2

        again = await tuner.run()
        assert not [a for a in again.adjustments if a.config == "bypass"]

    @pytest.mark.asyncio
    async def test_bypass_store_failure_skips_rule(self, tuner, store, clock) -> None:
        now = clock.now()
        await seed(store, [make_record(ThreatType.BYPASS, now, technique="x") for _ in range(101)])
        store.get_bypass_patterns = AsyncMock(side_effect=ConnectionError("db down"))
        result = await tuner.run()
        assert result.adjustments == []

    @pytest.mark.asyncio
    async def test_sustained_nsfw_maximises_sensitivity(
        self, tuner, store, thresholds, clock
    ) -> None:
        now = clock.now()
        await seed(store, [make_record(ThreatType.NSFW, now) for _ in range(31)])
        result = await tuner.run()
        assert thresholds.media.nsfw_sensitivity == NsfwSensitivity.MAXIMUM
        assert result.adjustments[0].new_value == "maximum"

        assert (await tuner.run()).adjustments == []


# =========================================================================
# 2. Pattern analysis and prediction
# =========================================================================


class TestAnalysis:
    def test_pattern_summary(self, tuner, clock) -> None:
        now = clock.now()  # 00:00 UTC
        records = [
            make_record(ThreatType.SPAM, now - timedelta(hours=1), entity_id="a"),
            make_record(ThreatType.SPAM, now - timedelta(hours=1), entity_id="a"),
            make_record(ThreatType.SPAM, now - timedelta(hours=2), entity_id="a"),
            make_record(
                ThreatType.SPAM, now - timedelta(hours=5), entity_id="b", community_id="guild-2"
            ),
            make_record(ThreatType.NONE, now),
        ]
        patterns = tuner.analyze_patterns(records, now=now)

        assert list(patterns) == [ThreatType.SPAM]
        spam = patterns[ThreatType.SPAM]
        assert spam.frequency == 4
        assert spam.peak_hours == [19, 22, 23]
        assert spam.affected_communities == ["guild-1", "guild-2"]
        assert spam.repeat_offenders == ["a"]
        assert spam.last_seen == now - timedelta(hours=1)

    def test_dominant_severity_tie_goes_to_more_severe(self, tuner, clock) -> None:
        now = clock.now()
        records = [
            make_record(ThreatType.RAID, now, severity=Severity.MEDIUM),
            make_record(ThreatType.RAID, now, severity=Severity.CRITICAL),
        ]
        assert tuner.analyze_patterns(records)[ThreatType.RAID].dominant_severity == (
            Severity.CRITICAL
        )

    def test_technique_and_pattern_keys_both_counted(self, tuner, clock) -> None:
        now = clock.now()
        records = [
            make_record(ThreatType.BYPASS, now, technique="homoglyph", pattern="zero_width"),
            make_record(ThreatType.BYPASS, now, pattern="zero_width"),
            make_record(ThreatType.BYPASS, now, technique=""),
        ]
        bypass = tuner.analyze_patterns(records, now=now)[ThreatType.BYPASS]
        assert bypass.top_techniques == ["zero_width", "homoglyph"]

    def test_pattern_lists_are_not_techniques(self, tuner, clock) -> None:
        now = clock.now()
        records = [make_record(ThreatType.RAID, now, patterns=["cp", "leak"])]
        assert tuner.analyze_patterns(records, now=now)[ThreatType.RAID].top_techniques == []

    def test_predictions_sorted_and_capped(self, tuner, clock) -> None:
        now = clock.now()
        records = [make_record(ThreatType.SPAM, now, severity=Severity.LOW) for _ in range(100)]
        records += [make_record(ThreatType.RAID, now, severity=Severity.CRITICAL) for _ in range(10)]
        predictions = tuner.predict_attacks(tuner.analyze_patterns(records, now=now), now=now)

        assert [p.threat_type for p in predictions] == [ThreatType.SPAM, ThreatType.RAID]
        spam, raid = predictions
        # 100/1000, doubled because hour 0 is a peak hour
        assert spam.probability == pytest.approx(0.2)
        assert raid.probability == pytest.approx(0.03)
        assert spam.confidence == 20
        assert spam.expected_timeframe == "now"
        assert all(p.probability <= 0.99 for p in predictions)

    def test_expected_timeframe(self) -> None:
        assert _expected_timeframe([], 5) == "unknown"
        assert _expected_timeframe([3, 20], 5) == "in 15h (peak at 20:00 UTC)"
        assert _expected_timeframe([3], 5) == "in 22h (peak at 03:00 UTC)"


# =========================================================================
# 3. On-demand tuning, reports and health
# =========================================================================


class TestAutoTuneAndReports:
    @pytest.mark.asyncio
    async def test_hourly_volume_raises_cooldown(self, tuner, store, thresholds, clock) -> None:
        now = clock.now()
        await seed(store, [make_record(ThreatType.SPAM, now) for _ in range(21)])
        adjustments = await tuner.auto_tune_thresholds()
        assert thresholds.spam.cooldown_seconds == 20
        assert adjustments[0].parameter == "cooldown_seconds"

    @pytest.mark.asyncio
    async def test_severe_volume_lowers_join_cap(self, tuner, store, thresholds, clock) -> None:
        earlier = clock.now() - timedelta(hours=3)
        await seed(
            store,
            [make_record(ThreatType.RAID, earlier, severity=Severity.HIGH) for _ in range(16)],
        )
        adjustments = await tuner.auto_tune_thresholds()
        assert thresholds.raid.max_joins_per_minute == 11
        assert [a.parameter for a in adjustments] == ["max_joins_per_minute"]

    @pytest.mark.asyncio
    async def test_learning_report(self, tuner, store, clock) -> None:
        now = clock.now()
        await seed(
            store,
            [
                make_record(ThreatType.RAID, now, entity_id=f"u{i}", severity=Severity.CRITICAL)
                for i in range(12)
            ],
        )
        report = await tuner.generate_learning_report()
        assert report.threats_analyzed == 12
        assert report.risk_level == RiskLevel.CRITICAL
        assert "Review repeat offenders for a global block list" in report.recommendations
        data = report.to_dict()
        assert data["risk_level"] == "critical"
        assert data["patterns"][0]["threat_type"] == "raid"

    @pytest.mark.asyncio
    async def test_empty_report_is_low_risk(self, tuner) -> None:
        report = await tuner.generate_learning_report()
        assert report.risk_level == RiskLevel.LOW
        assert report.recommendations == []


class TestLifecycleAndHealth:
    def test_not_running_is_unhealthy(self, tuner) -> None:
        health = tuner.health_check()
        assert health["status"] == "unhealthy"
        assert health["learning_enabled"] is False

    @pytest.mark.asyncio
    async def test_loop_runs_and_reports_healthy(self, store, thresholds, clock) -> None:
        tuner = AdaptiveTuner(store, thresholds, interval_seconds=0.01, now=clock.now)
        await tuner.start()
        await asyncio.sleep(0.05)
        health = tuner.health_check()
        await tuner.stop()

        assert health["status"] == "healthy"
        assert tuner.last_analysis == clock.now()

    @pytest.mark.asyncio
    async def test_failed_run_degrades(self, store, thresholds, clock) -> None:
        store.query_recent = AsyncMock(side_effect=ConnectionError("db down"))
        tuner = AdaptiveTuner(store, thresholds, interval_seconds=0.01, now=clock.now)
        await tuner.start()
        await asyncio.sleep(0.05)
        health = tuner.health_check()
        await tuner.stop()

        assert health["status"] == "degraded"
        assert "db down" in health["details"]

    @pytest.mark.asyncio
    async def test_stale_analysis_degrades(self, tuner, clock) -> None:
        await tuner.run()
        tuner._running = True
        clock.advance(hours=4)
        assert tuner.health_check()["status"] == "degraded"
        tuner._running = False
