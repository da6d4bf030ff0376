"""Composition root wiring the detection pipeline, circuit guard and tuner.

A platform connector drives :class:`ModerationEngine` with inbound events and
executes the returned verdicts. The engine persists an audit record and
applies the reputation penalty after every verdict; persistence failures are
logged and never reach the connector. :class:`CircuitOpenError` and
:class:`OperationTimeoutError` do reach it and should be retried with backoff.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from raidshield.adaptive.tuner import AdaptiveTuner
from raidshield.config import Settings, get_settings
from raidshield.logging import get_logger
from raidshield.moderation.classifier import OllamaThreatClassifier, ThreatClassifier
from raidshield.moderation.media import AttachmentFetcher, HttpAttachmentFetcher
from raidshield.moderation.models import Attachment, IncidentRecord, ThreatRecord, Verdict
from raidshield.moderation.pipeline import DetectionPipeline
from raidshield.moderation.postgres_store import PostgresThreatStore
from raidshield.moderation.shadow import OBSERVED_ACTION, ShadowMode
from raidshield.moderation.state import ModerationState
from raidshield.moderation.store import InMemoryThreatStore, ThreatStore
from raidshield.moderation.thresholds import ThresholdConfig
from raidshield.resilience.circuit import CircuitConfig, CircuitGuard, FailoverEvent
from raidshield.resilience.facade import ResilientPipeline

log = get_logger("raidshield.engine")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ModerationEngine:
    """Entry point for platform connectors."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        store: ThreatStore | None = None,
        classifier: ThreatClassifier | None = None,
        fetcher: AttachmentFetcher | None = None,
        thresholds: ThresholdConfig | None = None,
        clock: Callable[[], float] = time.time,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._store: ThreatStore = store or InMemoryThreatStore()
        self._classifier = classifier
        self._fetcher = fetcher
        self._now = now
        self.thresholds = thresholds or ThresholdConfig()

        backup_names = [f"backup-{i}" for i in range(self._settings.circuit_backup_count)]
        pipelines = [self._build_pipeline(name, clock) for name in ["primary", *backup_names]]
        self.guard: CircuitGuard[DetectionPipeline] = CircuitGuard(
            pipelines[0],
            pipelines[1:],
            config=CircuitConfig.from_settings(self._settings),
            name="detection_pipeline",
            clock=clock,
        )
        self.guard.on_failover(self._on_circuit_event)
        self.guard.on_restore(self._on_circuit_event)
        self.pipeline = ResilientPipeline(self.guard)

        self.tuner = AdaptiveTuner(
            self._store,
            self.pipeline,
            interval_seconds=self._settings.adaptive_interval_seconds,
            history_limit=self._settings.adaptive_history_limit,
            adjustment_retention=self._settings.adaptive_adjustment_retention,
            now=now,
        )
        self.shadow_mode = ShadowMode(
            auto_disable_hours=self._settings.shadow_mode_auto_disable_hours, now=now
        )
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    async def create(cls, settings: Settings | None = None) -> ModerationEngine:
        """Build an engine with production collaborators from *settings*."""
        settings = settings or get_settings()
        store: ThreatStore
        if settings.postgres_dsn:
            postgres = PostgresThreatStore(settings.postgres_dsn)
            await postgres.initialize()
            store = postgres
        else:
            log.warning("using_in_memory_store", note="records are lost on restart")
            store = InMemoryThreatStore()

        classifier = OllamaThreatClassifier() if settings.classifier_enabled else None
        fetcher = HttpAttachmentFetcher() if settings.classifier_enabled else None
        return cls(settings=settings, store=store, classifier=classifier, fetcher=fetcher)

    def _build_pipeline(self, name: str, clock: Callable[[], float]) -> DetectionPipeline:
        settings = self._settings
        state = ModerationState(
            max_tracked_entities=settings.max_tracked_entities,
            sweep_interval=settings.state_sweep_interval,
            warning_decay_seconds=settings.warning_decay_hours * 3600,
            mute_seconds=settings.mute_duration_minutes * 60,
            clock=clock,
        )
        return DetectionPipeline(
            thresholds=self.thresholds,
            store=self._store,
            state=state,
            classifier=self._classifier,
            fetcher=self._fetcher,
            default_level=settings.default_aggressiveness_level,
            max_content_length=settings.max_content_length,
            classifier_timeout=settings.classifier_call_timeout,
            now=self._now,
            name=name,
        )

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def handle_message(
        self,
        entity_id: str,
        content: str,
        community_id: str,
        attachments: Sequence[Attachment] | None = None,
    ) -> Verdict:
        verdict = await self.pipeline.evaluate_message(
            entity_id, content, community_id, attachments
        )
        return await self._finalize(verdict, entity_id, community_id, content)

    async def handle_join(
        self,
        entity_id: str,
        community_id: str,
        account_created_at: datetime,
        *,
        username: str = "",
    ) -> Verdict:
        verdict = await self.pipeline.evaluate_join(
            entity_id, community_id, account_created_at, username=username
        )
        return await self._finalize(verdict, entity_id, community_id, username or None)

    async def _finalize(
        self, verdict: Verdict, entity_id: str, community_id: str, content: str | None
    ) -> Verdict:
        if verdict.is_allow:
            return verdict

        enforced = self.shadow_mode.apply(community_id, verdict)
        observed = enforced.is_allow
        record = ThreatRecord.from_verdict(
            verdict,
            entity_id=entity_id,
            community_id=community_id,
            content=content[:500] if content else None,
            action=OBSERVED_ACTION if observed else None,
            timestamp=self._now(),
        )
        try:
            await self._store.record_threat(record)
        except Exception as e:
            log.warning("audit_record_failed", entity_id=entity_id, error=str(e))

        if not observed and verdict.reputation_penalty:
            try:
                await self._store.adjust_reputation(
                    entity_id, community_id, verdict.reputation_penalty
                )
            except Exception as e:
                log.warning("reputation_update_failed", entity_id=entity_id, error=str(e))
        return enforced

    # ------------------------------------------------------------------
    # Circuit incidents
    # ------------------------------------------------------------------

    def _on_circuit_event(self, event: FailoverEvent) -> None:
        incident = IncidentRecord(
            kind=f"circuit_{event.kind}",
            description=f"{event.kind} from {event.from_instance} to {event.to_instance}",
            metadata={"reason": event.reason, "failover_count": self.guard.failover_count},
        )
        try:
            task = asyncio.get_running_loop().create_task(self._record_incident(incident))
        except RuntimeError:
            log.warning("incident_not_recorded", kind=incident.kind, reason="no running loop")
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _record_incident(self, incident: IncidentRecord) -> None:
        try:
            await self._store.record_incident(incident)
        except Exception as e:
            log.warning("incident_record_failed", kind=incident.kind, error=str(e))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        for instance in self.guard.instances:
            await instance.state.start()
        await self.guard.start()
        if self._settings.adaptive_tuning_enabled:
            await self.tuner.start()
        log.info(
            "moderation_engine_started",
            backups=len(self.guard.instances) - 1,
            adaptive_tuning=self._settings.adaptive_tuning_enabled,
        )

    async def stop(self) -> None:
        await self.tuner.stop()
        await self.guard.stop()
        for instance in self.guard.instances:
            await instance.state.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        for collaborator in (self._classifier, self._fetcher, self._store):
            close = getattr(collaborator, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    log.warning("collaborator_close_failed", error=str(e))
        log.info("moderation_engine_stopped")

    def health_check(self) -> dict[str, Any]:
        circuit = self.guard.health()
        tuner = self.tuner.health_check()
        if circuit["status"] == "unhealthy":
            status = "unhealthy"
        elif circuit["status"] == "degraded" or (
            self._settings.adaptive_tuning_enabled and tuner["status"] != "healthy"
        ):
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "circuit": circuit,
            "adaptive": tuner,
            "shadow_mode": self.shadow_mode.status(),
        }
