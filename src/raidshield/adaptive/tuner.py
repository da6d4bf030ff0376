"""Adaptive threshold tuner.

Periodically mines the historical record store, recomputes one
:class:`ThreatPattern` per threat type, and applies a fixed rule set that
tightens detection when attack volume is sustained. Every change goes through
the pipeline's configuration interface and is appended to a bounded
adjustment log; the tuner never mutates configuration in place.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
from collections import Counter, deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from raidshield.adaptive.models import (
    AdjustmentSeverity,
    AttackPrediction,
    LearningReport,
    RiskLevel,
    ThreatPattern,
    ThresholdAdjustment,
    TuningResult,
)
from raidshield.logging import get_logger
from raidshield.moderation.models import BypassPattern, Severity, ThreatRecord, ThreatType
from raidshield.moderation.store import ThreatStore
from raidshield.moderation.thresholds import MediaConfig, NsfwSensitivity, RaidConfig, SpamConfig

log = get_logger("raidshield.adaptive.tuner")

# Rule triggers
SPAM_DAILY_LIMIT = 50
RAID_WEEKLY_LIMIT = 10
BYPASS_WEEKLY_LIMIT = 100
NSFW_DAILY_LIMIT = 30
SPAM_RATE_FACTOR = 0.8
MIN_ACCOUNT_AGE_STEP = 7
MAX_MIN_ACCOUNT_AGE = 30

# auto_tune_thresholds triggers
HOURLY_VOLUME_LIMIT = 20
DAILY_SEVERE_LIMIT = 15
COOLDOWN_STEP = 15
MAX_COOLDOWN = 120

REPEAT_OFFENDER_MIN_RECORDS = 3
TOP_TECHNIQUES = 5
PEAK_HOUR_COUNT = 3
MAX_PREDICTIONS = 5

_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}

_PREDICTION_ACTIONS: dict[ThreatType, list[str]] = {
    ThreatType.SPAM: ["Lower message-rate limits", "Enable slow mode in busy channels"],
    ThreatType.RAID: ["Raise the minimum account age", "Prepare a join lockdown"],
    ThreatType.BYPASS: ["Review newly learned bypass patterns"],
    ThreatType.NSFW: ["Switch NSFW sensitivity to maximum"],
}


class ThresholdConfigurable(Protocol):
    """Configuration interface the tuner writes through."""

    def get_spam_config(self) -> SpamConfig: ...

    def update_spam_config(self, changes: dict[str, Any]) -> SpamConfig: ...

    def get_raid_config(self) -> RaidConfig: ...

    def update_raid_config(self, changes: dict[str, Any]) -> RaidConfig: ...

    def get_media_config(self) -> MediaConfig: ...

    def update_media_config(self, changes: dict[str, Any]) -> MediaConfig: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AdaptiveTuner:
    """Self-tuning controller for the detection thresholds."""

    def __init__(
        self,
        store: ThreatStore,
        target: ThresholdConfigurable,
        *,
        interval_seconds: float = 3600,
        history_limit: int = 1000,
        adjustment_retention: int = 500,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._target = target
        self._interval = interval_seconds
        self._history_limit = history_limit
        self._now = now
        self._adjustments: deque[ThresholdAdjustment] = deque(maxlen=adjustment_retention)
        self._patterns: dict[ThreatType, ThreatPattern] = {}
        self._last_analysis: datetime | None = None
        self._last_error: str | None = None
        self._running = False
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def adjustment_history(self) -> list[ThresholdAdjustment]:
        return list(self._adjustments)

    @property
    def patterns(self) -> dict[ThreatType, ThreatPattern]:
        return dict(self._patterns)

    @property
    def last_analysis(self) -> datetime | None:
        return self._last_analysis

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic tuning loop."""
        if self._running:
            log.warning("tuner_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        log.info("adaptive_tuner_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        """Stop the periodic tuning loop."""
        self._running = False
        task = self._task
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self._task = None
        log.info("adaptive_tuner_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self.run()
            except Exception as e:
                log.error("adaptive_tuning_error", error=str(e))
                self._last_error = str(e)

    # ------------------------------------------------------------------
    # Tuning run
    # ------------------------------------------------------------------

    async def run(self) -> TuningResult:
        """Run one analysis and adjustment pass.

        Returns:
            The patterns, applied adjustments and predictions of this pass.
        """
        now = self._now()
        records = await self._store.query_recent(self._history_limit)
        patterns = self.analyze_patterns(records, now=now)
        self._patterns = patterns

        adjustments: list[ThresholdAdjustment] = []
        adjustments += self._tune_spam(records, now)
        adjustments += self._tune_raid(records, patterns.get(ThreatType.RAID), now)
        adjustments += await self._tune_bypass(records, patterns.get(ThreatType.BYPASS), now)
        adjustments += self._tune_nsfw(records, now)

        predictions = self.predict_attacks(patterns, now=now)
        self._last_analysis = now
        self._last_error = None
        log.info(
            "adaptive_tuning_completed",
            records=len(records),
            patterns=len(patterns),
            adjustments=len(adjustments),
            predictions=len(predictions),
        )
        return TuningResult(
            records_analyzed=len(records),
            patterns=patterns,
            adjustments=adjustments,
            predictions=predictions,
            completed_at=now,
        )

    def analyze_patterns(
        self, records: list[ThreatRecord], *, now: datetime | None = None
    ) -> dict[ThreatType, ThreatPattern]:
        """Group *records* by threat type and summarise each group."""
        now = now or self._now()
        week_ago = now - timedelta(days=7)
        grouped: dict[ThreatType, list[ThreatRecord]] = {}
        for record in records:
            if record.threat_type == ThreatType.NONE:
                continue
            grouped.setdefault(record.threat_type, []).append(record)

        patterns: dict[ThreatType, ThreatPattern] = {}
        for threat_type, group in grouped.items():
            severities = Counter(r.severity for r in group)
            # Ties go to the more severe level
            dominant = max(severities, key=lambda s: (severities[s], _SEVERITY_RANK[s]))

            techniques: Counter[str] = Counter()
            for record in group:
                for key in ("technique", "pattern"):
                    technique = record.metadata.get(key)
                    if isinstance(technique, str) and technique:
                        techniques[technique] += 1

            hours = Counter(r.timestamp.hour for r in group if r.timestamp >= week_ago)
            peak_hours = [
                hour for hour, _ in sorted(hours.items(), key=lambda kv: (-kv[1], kv[0]))
            ][:PEAK_HOUR_COUNT]

            offenders = Counter(r.entity_id for r in group)
            patterns[threat_type] = ThreatPattern(
                threat_type=threat_type,
                frequency=len(group),
                dominant_severity=dominant,
                top_techniques=[t for t, _ in techniques.most_common(TOP_TECHNIQUES)],
                peak_hours=sorted(peak_hours),
                affected_communities=sorted({r.community_id for r in group}),
                repeat_offenders=sorted(
                    e for e, c in offenders.items() if c >= REPEAT_OFFENDER_MIN_RECORDS
                ),
                last_seen=max(r.timestamp for r in group),
            )
        return patterns

    def predict_attacks(
        self,
        patterns: dict[ThreatType, ThreatPattern] | None = None,
        *,
        now: datetime | None = None,
    ) -> list[AttackPrediction]:
        """Predict likely attacks from the most frequent patterns."""
        now = now or self._now()
        patterns = self._patterns if patterns is None else patterns
        current_hour = now.hour

        top = sorted(patterns.values(), key=lambda p: p.frequency, reverse=True)[:MAX_PREDICTIONS]
        predictions: list[AttackPrediction] = []
        for pattern in top:
            in_peak = current_hour in pattern.peak_hours
            probability = pattern.frequency / 1000
            if in_peak:
                probability *= 2
            if pattern.dominant_severity in (Severity.HIGH, Severity.CRITICAL):
                probability *= 1.5
            probability = min(0.99, probability)

            predictions.append(
                AttackPrediction(
                    threat_type=pattern.threat_type,
                    probability=probability,
                    confidence=int(probability * 100),
                    expected_timeframe=_expected_timeframe(pattern.peak_hours, current_hour),
                    recommended_actions=list(_PREDICTION_ACTIONS.get(pattern.threat_type, [])),
                )
            )
        predictions.sort(key=lambda p: p.probability, reverse=True)
        return predictions

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _tune_spam(self, records: list[ThreatRecord], now: datetime) -> list[ThresholdAdjustment]:
        count = _count_since(records, ThreatType.SPAM, now - timedelta(hours=24))
        if count <= SPAM_DAILY_LIMIT:
            return []

        adjustments: list[ThresholdAdjustment] = []
        spam = self._target.get_spam_config()
        old_rate = spam.max_messages_per_minute
        new_rate = max(1, math.floor(old_rate * SPAM_RATE_FACTOR))
        if new_rate != old_rate:
            self._target.update_spam_config({"max_messages_per_minute": new_rate})
            adjustments.append(
                self._record(
                    "spam",
                    "max_messages_per_minute",
                    old_rate,
                    new_rate,
                    f"{count} spam incidents in 24h, reducing message rate limit",
                    AdjustmentSeverity.MAJOR,
                )
            )

        # 1 counts the current message, so no repeats are tolerated
        if spam.max_duplicate_messages != 1:
            self._target.update_spam_config({"max_duplicate_messages": 1})
            adjustments.append(
                self._record(
                    "spam",
                    "max_duplicate_messages",
                    spam.max_duplicate_messages,
                    1,
                    f"{count} spam incidents in 24h, zero duplicate tolerance",
                    AdjustmentSeverity.MAJOR,
                )
            )
        return adjustments

    def _tune_raid(
        self, records: list[ThreatRecord], pattern: ThreatPattern | None, now: datetime
    ) -> list[ThresholdAdjustment]:
        if pattern is None:
            return []

        adjustments: list[ThresholdAdjustment] = []
        count = _count_since(records, ThreatType.RAID, now - timedelta(days=7))
        if count > RAID_WEEKLY_LIMIT:
            raid = self._target.get_raid_config()
            old_age = raid.min_account_age_days
            new_age = min(MAX_MIN_ACCOUNT_AGE, old_age + MIN_ACCOUNT_AGE_STEP)
            if new_age != old_age:
                self._target.update_raid_config({"min_account_age_days": new_age})
                adjustments.append(
                    self._record(
                        "raid",
                        "min_account_age_days",
                        old_age,
                        new_age,
                        f"{count} raids in 7 days, raising account age requirement",
                        AdjustmentSeverity.MAJOR,
                    )
                )

        raid = self._target.get_raid_config()
        known = {p.lower() for p in raid.suspicious_patterns}
        learned = [t for t in pattern.top_techniques if t.lower() not in known]
        if learned:
            merged = [*raid.suspicious_patterns, *learned]
            self._target.update_raid_config({"suspicious_patterns": merged})
            adjustments.append(
                self._record(
                    "raid",
                    "suspicious_patterns",
                    len(raid.suspicious_patterns),
                    len(merged),
                    f"learned {len(learned)} raid techniques: {', '.join(learned)}",
                    AdjustmentSeverity.MODERATE,
                )
            )
        return adjustments

    async def _tune_bypass(
        self, records: list[ThreatRecord], pattern: ThreatPattern | None, now: datetime
    ) -> list[ThresholdAdjustment]:
        if pattern is None:
            return []
        count = _count_since(records, ThreatType.BYPASS, now - timedelta(days=7))
        if count <= BYPASS_WEEKLY_LIMIT:
            return []

        adjustments: list[ThresholdAdjustment] = []
        try:
            known = {p.name for p in await self._store.get_bypass_patterns()}
        except Exception as e:
            log.warning("bypass_patterns_load_failed", error=str(e))
            return []

        for technique in pattern.top_techniques:
            if technique in known:
                continue
            try:
                created = await self._store.create_bypass_pattern(
                    BypassPattern(
                        name=technique,
                        pattern=technique,
                        technique=technique,
                        countermeasure="learned from sustained bypass volume",
                        created_at=now,
                    )
                )
            except Exception as e:
                log.warning("bypass_pattern_create_failed", technique=technique, error=str(e))
                continue
            if created:
                adjustments.append(
                    self._record(
                        "bypass",
                        "patterns",
                        None,
                        technique,
                        f"{count} bypass attempts in 7 days, learned pattern {technique}",
                        AdjustmentSeverity.MAJOR,
                    )
                )
        return adjustments

    def _tune_nsfw(self, records: list[ThreatRecord], now: datetime) -> list[ThresholdAdjustment]:
        count = _count_since(records, ThreatType.NSFW, now - timedelta(hours=24))
        if count <= NSFW_DAILY_LIMIT:
            return []
        media = self._target.get_media_config()
        if media.nsfw_sensitivity == NsfwSensitivity.MAXIMUM:
            return []
        self._target.update_media_config({"nsfw_sensitivity": NsfwSensitivity.MAXIMUM})
        return [
            self._record(
                "media",
                "nsfw_sensitivity",
                media.nsfw_sensitivity.value,
                NsfwSensitivity.MAXIMUM.value,
                f"{count} NSFW incidents in 24h, maximum sensitivity",
                AdjustmentSeverity.MAJOR,
            )
        ]

    # ------------------------------------------------------------------
    # On-demand tuning and reporting
    # ------------------------------------------------------------------

    async def auto_tune_thresholds(self) -> list[ThresholdAdjustment]:
        """Short-horizon tuning on overall volume and severity."""
        now = self._now()
        records = await self._store.query_recent(self._history_limit)
        hourly = [r for r in records if r.timestamp > now - timedelta(hours=1)]
        severe = [
            r
            for r in records
            if r.timestamp > now - timedelta(hours=24)
            and r.severity in (Severity.HIGH, Severity.CRITICAL)
        ]

        adjustments: list[ThresholdAdjustment] = []
        if len(hourly) > HOURLY_VOLUME_LIMIT:
            spam = self._target.get_spam_config()
            new_cooldown = min(MAX_COOLDOWN, spam.cooldown_seconds + COOLDOWN_STEP)
            if new_cooldown != spam.cooldown_seconds:
                self._target.update_spam_config({"cooldown_seconds": new_cooldown})
                adjustments.append(
                    self._record(
                        "spam",
                        "cooldown_seconds",
                        spam.cooldown_seconds,
                        new_cooldown,
                        f"{len(hourly)} incidents in the last hour, increasing cooldown",
                        AdjustmentSeverity.MODERATE,
                    )
                )

        if len(severe) > DAILY_SEVERE_LIMIT:
            raid = self._target.get_raid_config()
            new_joins = max(1, raid.max_joins_per_minute - 1)
            if new_joins != raid.max_joins_per_minute:
                self._target.update_raid_config({"max_joins_per_minute": new_joins})
                adjustments.append(
                    self._record(
                        "raid",
                        "max_joins_per_minute",
                        raid.max_joins_per_minute,
                        new_joins,
                        f"{len(severe)} high/critical incidents in 24h, reducing join tolerance",
                        AdjustmentSeverity.MAJOR,
                    )
                )
        return adjustments

    async def generate_learning_report(self) -> LearningReport:
        now = self._now()
        records = await self._store.query_recent(self._history_limit)
        patterns = self.analyze_patterns(records, now=now)
        predictions = self.predict_attacks(patterns, now=now)

        offenders = Counter(r.entity_id for r in records if r.threat_type != ThreatType.NONE)
        top_offenders = offenders.most_common(10)

        daily = [r for r in records if r.timestamp > now - timedelta(hours=24)]
        critical = sum(1 for r in daily if r.severity == Severity.CRITICAL)
        high = sum(1 for r in daily if r.severity == Severity.HIGH)
        if critical > 10 or high > 30:
            risk = RiskLevel.CRITICAL
        elif critical > 5 or high > 15:
            risk = RiskLevel.HIGH
        elif len(daily) > 50:
            risk = RiskLevel.MEDIUM
        else:
            risk = RiskLevel.LOW

        recommendations: list[str] = []
        if critical > 5:
            recommendations.append("Enable maximum aggressiveness in affected communities")
        raid = patterns.get(ThreatType.RAID)
        if raid is not None and raid.frequency > 20:
            recommendations.append("Consider join lockdowns during peak raid hours")
        if len(top_offenders) > 5:
            recommendations.append("Review repeat offenders for a global block list")
        bypass = patterns.get(ThreatType.BYPASS)
        if bypass is not None and bypass.frequency > 50:
            recommendations.append("Bypass techniques are evolving; review learned patterns")
        if len(daily) > 100:
            recommendations.append("High threat volume; consider a shorter tuning interval")

        return LearningReport(
            threats_analyzed=len(records),
            patterns=sorted(patterns.values(), key=lambda p: p.frequency, reverse=True),
            predictions=predictions,
            recent_adjustments=list(self._adjustments)[-20:],
            top_offenders=top_offenders,
            risk_level=risk,
            recommendations=recommendations,
            generated_at=now,
        )

    def health_check(self) -> dict[str, Any]:
        now = self._now()
        status = "healthy"
        details = "adaptive tuning operating normally"
        if not self._running:
            status = "unhealthy"
            details = "periodic tuning is not running"
        elif self._last_error is not None:
            status = "degraded"
            details = f"last run failed: {self._last_error}"
        elif self._last_analysis is not None and (
            now - self._last_analysis
        ).total_seconds() > 3 * self._interval:
            status = "degraded"
            details = "no analysis in the last three intervals"

        day_ago = now - timedelta(hours=24)
        return {
            "status": status,
            "last_analysis": self._last_analysis.isoformat() if self._last_analysis else None,
            "patterns_learned": len(self._patterns),
            "total_adjustments": len(self._adjustments),
            "recent_adjustments": sum(1 for a in self._adjustments if a.timestamp > day_ago),
            "learning_enabled": self._running,
            "details": details,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(
        self,
        config: str,
        parameter: str,
        old_value: Any,
        new_value: Any,
        reason: str,
        severity: AdjustmentSeverity,
    ) -> ThresholdAdjustment:
        adjustment = ThresholdAdjustment(
            config=config,
            parameter=parameter,
            old_value=old_value,
            new_value=new_value,
            reason=reason,
            severity=severity,
            timestamp=self._now(),
        )
        self._adjustments.append(adjustment)
        log.info(
            "threshold_adjusted",
            config=config,
            parameter=parameter,
            old_value=old_value,
            new_value=new_value,
            severity=severity.value,
            reason=reason,
        )
        return adjustment


def _count_since(records: list[ThreatRecord], threat_type: ThreatType, since: datetime) -> int:
    return sum(1 for r in records if r.threat_type == threat_type and r.timestamp > since)


def _expected_timeframe(peak_hours: list[int], current_hour: int) -> str:
    if not peak_hours:
        return "unknown"
    if current_hour in peak_hours:
        return "now"
    upcoming = [h for h in sorted(peak_hours) if h > current_hour]
    next_peak = upcoming[0] if upcoming else min(peak_hours)
    hours_until = (next_peak - current_hour) % 24
    return f"in {hours_until}h (peak at {next_peak:02d}:00 UTC)"
