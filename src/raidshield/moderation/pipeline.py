"""Multi-stage moderation decision pipeline.

``evaluate_message`` runs, short-circuiting on the first non-allow result:

1. Forbidden-word filter (attack keywords, then the three-strike profanity ladder)
2. Rate and pattern spam checks
3. Bypass/evasion classification
4. Attachment checks (count, URL length, NSFW)
5. AI content analysis against the profile's confidence threshold

``evaluate_join`` checks join rate, new-account spikes and suspicious names.

Classifier and store failures never escape: each stage degrades to the
most permissive outcome and logs a warning. Only malformed events raise.
Classifier and attachment calls for one message share a single time budget
(``classifier_timeout``), which must stay below the circuit call timeout.
"""

from __future__ import annotations

import asyncio
import base64
import math
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from raidshield.logging import get_logger
from raidshield.moderation.classifier import ThreatClassifier
from raidshield.moderation.errors import AttachmentTooLargeError, InvalidEventError
from raidshield.moderation.forensics import log_moderation_event
from raidshield.moderation.media import AttachmentFetcher
from raidshield.moderation.models import (
    Attachment,
    BypassPattern,
    CommunityConfig,
    EntityOverride,
    ModerationAction,
    Severity,
    ThreatType,
    Verdict,
)
from raidshield.moderation.profiles import AggressivenessProfile, resolve_level, resolve_profile
from raidshield.moderation.spam import check_spam
from raidshield.moderation.state import ModerationState, WarningState
from raidshield.moderation.store import ThreatStore
from raidshield.moderation.thresholds import MediaConfig, RaidConfig, SpamConfig, ThresholdConfig
from raidshield.moderation.wordfilter import WordCategory, WordFilter, normalize_text

log = get_logger("raidshield.moderation.pipeline")

# Classifier verdicts are only acted on above this confidence
BYPASS_CONFIDENCE_FLOOR = 0.9
# Content classifications at or below this carry no signal
AI_SIGNAL_FLOOR = 0.4
CRITICAL_NAME_PATTERNS = ("cp", "gore", "nuke", "raid", "leak", "dox")
NEW_ACCOUNT_BAN_DAYS = 7

_SEVERITY_ACTIONS: dict[Severity, ModerationAction] = {
    Severity.CRITICAL: ModerationAction.BAN,
    Severity.HIGH: ModerationAction.KICK,
    Severity.MEDIUM: ModerationAction.MUTE,
    Severity.LOW: ModerationAction.WARN,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DetectionPipeline:
    """Score inbound events against per-entity thresholds.

    Every instance owns its sliding-window and warning state. The threshold
    configuration may be shared between instances.
    """

    def __init__(
        self,
        *,
        thresholds: ThresholdConfig,
        store: ThreatStore,
        state: ModerationState | None = None,
        classifier: ThreatClassifier | None = None,
        fetcher: AttachmentFetcher | None = None,
        word_filter: WordFilter | None = None,
        default_level: int = 5,
        max_content_length: int = 2000,
        classifier_timeout: float = 5.0,
        now: Callable[[], datetime] = _utcnow,
        name: str = "primary",
    ) -> None:
        self._thresholds = thresholds
        self._store = store
        self._state = state or ModerationState()
        self._classifier = classifier
        self._fetcher = fetcher
        self._word_filter = word_filter or WordFilter()
        self._default_level = default_level
        self._max_content_length = max_content_length
        self._classifier_timeout = classifier_timeout
        self._now = now
        self.name = name

    @property
    def state(self) -> ModerationState:
        return self._state

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def evaluate_message(
        self,
        entity_id: str,
        content: str,
        community_id: str,
        attachments: Sequence[Attachment] | None = None,
    ) -> Verdict:
        """Evaluate a posted message.

        Args:
            entity_id: Author of the message.
            content: Raw message text; truncated to the configured length.
            community_id: Community the message was posted in.
            attachments: Files attached to the message.

        Returns:
            The :class:`Verdict` for this message.

        Raises:
            InvalidEventError: If an identifier is missing.
        """
        start = time.perf_counter()
        _require_ids(entity_id, community_id)
        content = (content or "")[: self._max_content_length]

        verdict = await self._evaluate_message(
            entity_id, content, community_id, list(attachments or [])
        )
        if not verdict.is_allow:
            log_moderation_event(
                event_type="message",
                entity_id=entity_id,
                community_id=community_id,
                verdict=verdict,
                content=content,
                processing_ms=(time.perf_counter() - start) * 1000,
            )
        return verdict

    async def evaluate_join(
        self,
        entity_id: str,
        community_id: str,
        account_created_at: datetime,
        *,
        username: str = "",
    ) -> Verdict:
        """Evaluate a member join.

        Raises:
            InvalidEventError: If an identifier is missing or
                *account_created_at* is not timezone-aware.
        """
        start = time.perf_counter()
        _require_ids(entity_id, community_id)
        if not isinstance(account_created_at, datetime) or account_created_at.tzinfo is None:
            raise InvalidEventError("account_created_at must be a timezone-aware datetime")

        verdict = await self._evaluate_join(entity_id, community_id, account_created_at, username)
        if not verdict.is_allow:
            log_moderation_event(
                event_type="join",
                entity_id=entity_id,
                community_id=community_id,
                verdict=verdict,
                content=username,
                processing_ms=(time.perf_counter() - start) * 1000,
            )
        return verdict

    # ------------------------------------------------------------------
    # Configuration interface
    # ------------------------------------------------------------------

    def get_spam_config(self) -> SpamConfig:
        return self._thresholds.get_spam_config()

    def update_spam_config(self, changes: dict[str, Any]) -> SpamConfig:
        return self._thresholds.update_spam_config(changes)

    def get_raid_config(self) -> RaidConfig:
        return self._thresholds.get_raid_config()

    def update_raid_config(self, changes: dict[str, Any]) -> RaidConfig:
        return self._thresholds.update_raid_config(changes)

    def get_media_config(self) -> MediaConfig:
        return self._thresholds.get_media_config()

    def update_media_config(self, changes: dict[str, Any]) -> MediaConfig:
        return self._thresholds.update_media_config(changes)

    def get_warnings(self, entity_id: str, community_id: str) -> WarningState:
        return self._state.warnings.get(community_id, entity_id)

    def reset_warnings(self, entity_id: str, community_id: str) -> bool:
        cleared = self._state.warnings.reset(community_id, entity_id)
        if cleared:
            log.info("warnings_reset", entity_id=entity_id, community_id=community_id)
        return cleared

    # ------------------------------------------------------------------
    # Profile resolution
    # ------------------------------------------------------------------

    async def resolve_profile(self, entity_id: str, community_id: str) -> AggressivenessProfile:
        """Resolve the effective profile for *entity_id*; never cached."""
        config: CommunityConfig | None = None
        override: EntityOverride | None = None
        protected = False
        reputation_score: int | None = None
        try:
            protected = await self._store.is_protected(entity_id)
            config = await self._store.get_config(community_id)
            override = await self._store.get_entity_override(entity_id, community_id)
            if not protected and (override is None or override.aggressiveness_level is None):
                reputation = await self._store.get_reputation(entity_id, community_id)
                reputation_score = reputation.score
        except Exception as e:
            log.warning(
                "profile_lookup_failed",
                entity_id=entity_id,
                community_id=community_id,
                error=str(e),
            )

        base_level = config.aggressiveness_level if config else self._default_level
        level = resolve_level(
            base_level,
            reputation_score=reputation_score,
            override_level=override.aggressiveness_level if override else None,
            protected=protected,
        )
        return resolve_profile(
            level,
            floor=config.ai_confidence_floor if config else None,
            override=override,
            spam_ceiling=self._thresholds.spam,
            raid_ceiling=self._thresholds.raid,
        )

    # ------------------------------------------------------------------
    # Message checks
    # ------------------------------------------------------------------

    async def _evaluate_message(
        self,
        entity_id: str,
        content: str,
        community_id: str,
        attachments: list[Attachment],
    ) -> Verdict:
        key = f"{community_id}:{entity_id}"
        fingerprint = normalize_text(content)
        history = self._state.messages.payloads(key)
        messages_last_minute = self._state.messages.record(key, fingerprint)
        duplicate_count = (
            self._state.messages.count_payload(key, fingerprint) if fingerprint else 0
        )

        verdict = self._check_forbidden_words(entity_id, content, community_id)
        if verdict is not None:
            return verdict

        profile = await self.resolve_profile(entity_id, community_id)

        spam_verdict = check_spam(
            content,
            profile.spam,
            messages_last_minute=messages_last_minute,
            duplicate_count=duplicate_count,
        )
        evidence: dict[str, Any] = {"level": profile.level}
        if spam_verdict is not None:
            if not spam_verdict.is_allow:
                return spam_verdict
            evidence.update(spam_verdict.evidence)

        classifier = self._classifier
        deadline = asyncio.get_running_loop().time() + self._classifier_timeout
        if content and classifier is not None:
            verdict = await self._check_bypass(
                classifier, entity_id, content, community_id, deadline
            )
            if verdict is not None:
                return verdict

        if attachments:
            verdict = await self._check_attachments(attachments, deadline)
            if verdict is not None:
                return verdict

        if content and classifier is not None:
            verdict = await self._check_content(classifier, content, history, profile, deadline)
            if verdict is not None:
                return verdict

        return Verdict.allow(**evidence)

    def _check_forbidden_words(
        self, entity_id: str, content: str, community_id: str
    ) -> Verdict | None:
        match = self._word_filter.check(content)
        if match is None:
            return None

        if match.category == WordCategory.ATTACK:
            return Verdict(
                action=ModerationAction.KICK,
                confidence=0.95,
                reason="attack_coordination",
                threat_type=ThreatType.COORDINATED_ATTACK,
                evidence={"detected_words": [match.term], "category": match.category.value},
            )

        warnings = self._state.warnings
        remaining = warnings.mute_remaining(community_id, entity_id)
        if remaining > 0:
            return Verdict(
                action=ModerationAction.MUTE,
                confidence=1.0,
                reason="still_muted",
                threat_type=ThreatType.PROFANITY,
                evidence={
                    "detected_words": [match.term],
                    "remaining_minutes": math.ceil(remaining / 60),
                },
            )

        strike = warnings.strike(community_id, entity_id)
        if strike.muted:
            return Verdict(
                action=ModerationAction.MUTE,
                confidence=0.95,
                reason="warning_limit_reached",
                threat_type=ThreatType.PROFANITY,
                evidence={
                    "detected_words": [match.term],
                    "warning_count": strike.count,
                    "muted_until": strike.muted_until,
                },
            )
        return Verdict(
            action=ModerationAction.DELETE,
            confidence=0.90,
            reason="forbidden_word",
            threat_type=ThreatType.PROFANITY,
            evidence={
                "detected_words": [match.term],
                "warning_count": strike.count,
                "warnings_remaining": strike.remaining_warnings,
            },
        )

    async def _check_bypass(
        self,
        classifier: ThreatClassifier,
        entity_id: str,
        content: str,
        community_id: str,
        deadline: float,
    ) -> Verdict | None:
        try:
            async with asyncio.timeout_at(deadline):
                known = await self._store.get_bypass_patterns()
                result = await classifier.classify_bypass(content, known)
        except TimeoutError:
            log.warning(
                "bypass_check_timed_out", entity_id=entity_id, timeout=self._classifier_timeout
            )
            return None
        except Exception as e:
            log.warning("bypass_check_failed", entity_id=entity_id, error=str(e))
            return None

        if not result.is_bypass or result.confidence < BYPASS_CONFIDENCE_FLOOR:
            return None

        technique = result.technique or "unknown"
        pattern = BypassPattern(
            name=f"{technique}:{entity_id}:{int(self._now().timestamp())}",
            pattern=result.pattern or content[:200],
            technique=technique,
            countermeasure=result.countermeasure,
        )
        try:
            await self._store.create_bypass_pattern(pattern)
        except Exception as e:
            log.warning("bypass_pattern_persist_failed", community_id=community_id, error=str(e))

        return Verdict(
            action=ModerationAction.BAN,
            confidence=result.confidence,
            reason="filter_bypass_attempt",
            threat_type=ThreatType.BYPASS,
            evidence={
                "technique": technique,
                "pattern": result.pattern,
                "countermeasure": result.countermeasure,
            },
        )

    async def _check_attachments(
        self, attachments: list[Attachment], deadline: float
    ) -> Verdict | None:
        media = self._thresholds.media
        if len(attachments) > media.max_attachments:
            return Verdict(
                action=ModerationAction.BAN,
                confidence=0.95,
                reason="attachment_flood",
                threat_type=ThreatType.SPAM,
                evidence={"attachments": len(attachments), "limit": media.max_attachments},
            )

        for attachment in attachments:
            if len(attachment.url) > media.max_url_length:
                return Verdict(
                    action=ModerationAction.BAN,
                    confidence=0.9,
                    reason="oversized_attachment_url",
                    threat_type=ThreatType.MALICIOUS,
                    evidence={"url_length": len(attachment.url)},
                )

        for attachment in attachments:
            content_type = (attachment.content_type or "").lower()
            if content_type not in media.allowed_image_types:
                log.debug("attachment_skipped", content_type=content_type or "unknown")
                continue
            if self._classifier is None or self._fetcher is None:
                continue
            verdict = await self._check_image(
                self._classifier, self._fetcher, attachment, media, deadline
            )
            if verdict is not None:
                return verdict
        return None

    async def _check_image(
        self,
        classifier: ThreatClassifier,
        fetcher: AttachmentFetcher,
        attachment: Attachment,
        media: MediaConfig,
        deadline: float,
    ) -> Verdict | None:
        try:
            async with asyncio.timeout_at(deadline):
                data = await fetcher.fetch(attachment.url)
        except AttachmentTooLargeError as e:
            return Verdict(
                action=ModerationAction.DELETE,
                confidence=0.95,
                reason="attachment_too_large",
                threat_type=ThreatType.OVERSIZED_CONTENT,
                evidence={"filename": attachment.filename, "limit_bytes": e.limit},
            )
        except TimeoutError:
            log.warning(
                "attachment_fetch_timed_out",
                filename=attachment.filename,
                timeout=self._classifier_timeout,
            )
            return None
        except Exception as e:
            log.warning("attachment_fetch_failed", filename=attachment.filename, error=str(e))
            return None

        try:
            async with asyncio.timeout_at(deadline):
                result = await classifier.classify_image(base64.b64encode(data).decode("ascii"))
        except TimeoutError:
            log.warning(
                "image_classification_timed_out",
                filename=attachment.filename,
                timeout=self._classifier_timeout,
            )
            return None
        except Exception as e:
            log.warning("image_classification_failed", filename=attachment.filename, error=str(e))
            return None

        if result.is_nsfw and result.confidence >= media.nsfw_confidence_floor:
            return Verdict(
                action=ModerationAction.BAN,
                confidence=result.confidence,
                reason="nsfw_content",
                threat_type=ThreatType.NSFW,
                evidence={
                    "filename": attachment.filename,
                    "categories": result.categories,
                    "sensitivity": media.nsfw_sensitivity.value,
                },
            )
        return None

    async def _check_content(
        self,
        classifier: ThreatClassifier,
        content: str,
        history: list[str],
        profile: AggressivenessProfile,
        deadline: float,
    ) -> Verdict | None:
        try:
            async with asyncio.timeout_at(deadline):
                result = await classifier.classify_content(content, history)
        except TimeoutError:
            log.warning("content_analysis_timed_out", timeout=self._classifier_timeout)
            return None
        except Exception as e:
            log.warning("content_analysis_failed", error=str(e))
            return None

        if result.confidence <= AI_SIGNAL_FLOOR or result.threat_level is None:
            return None
        if result.confidence < profile.ai_confidence_threshold:
            return Verdict.allow(
                "below_ai_threshold",
                ai_confidence=result.confidence,
                ai_threshold=profile.ai_confidence_threshold,
            )
        return Verdict(
            action=_SEVERITY_ACTIONS[result.threat_level],
            confidence=result.confidence,
            reason="ai_content_analysis",
            threat_type=ThreatType.HARMFUL_CONTENT,
            evidence={
                "threat_level": result.threat_level.value,
                "classified_as": result.threat_type,
                "reasoning": result.reasoning,
                "ai_threshold": profile.ai_confidence_threshold,
            },
        )

    # ------------------------------------------------------------------
    # Join checks
    # ------------------------------------------------------------------

    async def _evaluate_join(
        self,
        entity_id: str,
        community_id: str,
        account_created_at: datetime,
        username: str,
    ) -> Verdict:
        joins = self._state.joins
        joins.record(community_id, entity_id)
        joins_per_minute = joins.count(community_id, within=60)
        joins_per_hour = joins.count(community_id)

        profile = await self.resolve_profile(entity_id, community_id)
        raid = self._thresholds.raid
        minute_cap = profile.raid.max_joins_per_minute

        if joins_per_minute > minute_cap:
            return _raid(
                ModerationAction.BAN,
                0.99,
                "join_rate_exceeded",
                joins_per_minute=joins_per_minute,
                limit=minute_cap,
            )
        if joins_per_hour > raid.max_joins_per_hour:
            return _raid(
                ModerationAction.BAN,
                0.95,
                "hourly_join_rate_exceeded",
                joins_per_hour=joins_per_hour,
                limit=raid.max_joins_per_hour,
            )

        account_age_days = (self._now() - account_created_at).total_seconds() / 86400
        if (
            account_age_days < profile.raid.min_account_age_days
            and joins_per_minute > minute_cap / 2
        ):
            new_account = account_age_days < NEW_ACCOUNT_BAN_DAYS
            return _raid(
                ModerationAction.BAN if new_account else ModerationAction.KICK,
                0.99 if new_account else 0.95,
                "new_account_join_spike",
                account_age_days=round(account_age_days, 2),
                min_account_age_days=profile.raid.min_account_age_days,
                joins_per_minute=joins_per_minute,
            )

        if username:
            lowered = normalize_text(username)
            hits = sorted(
                {
                    p
                    for p in (*CRITICAL_NAME_PATTERNS, *raid.suspicious_patterns)
                    if p and p.lower() in lowered
                }
            )
            if len(hits) >= 2:
                return _raid(
                    ModerationAction.BAN,
                    0.98,
                    "suspicious_username",
                    patterns=hits,
                    technique=max(hits, key=len),
                )

        return Verdict.allow(
            joins_per_minute=joins_per_minute,
            account_age_days=round(account_age_days, 2),
        )


def _raid(action: ModerationAction, confidence: float, reason: str, **evidence: Any) -> Verdict:
    return Verdict(
        action=action,
        confidence=confidence,
        reason=reason,
        threat_type=ThreatType.RAID,
        evidence=evidence,
    )


def _require_ids(entity_id: str, community_id: str) -> None:
    if not entity_id or not str(entity_id).strip():
        raise InvalidEventError("entity_id is required")
    if not community_id or not str(community_id).strip():
        raise InvalidEventError("community_id is required")
