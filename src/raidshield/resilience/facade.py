"""Explicit-delegation facade putting a DetectionPipeline behind a CircuitGuard.

Evaluations go through the breaker. Configuration reads and writes target the
active instance directly: the threshold configuration is shared by every
instance, so they never need failover protection.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from raidshield.moderation.models import Attachment, Verdict
from raidshield.moderation.pipeline import DetectionPipeline
from raidshield.moderation.state import WarningState
from raidshield.moderation.thresholds import MediaConfig, RaidConfig, SpamConfig
from raidshield.resilience.circuit import CircuitGuard


class ResilientPipeline:
    """Same operation set as :class:`DetectionPipeline`, routed through a breaker."""

    def __init__(self, guard: CircuitGuard[DetectionPipeline]) -> None:
        self._guard = guard

    @property
    def guard(self) -> CircuitGuard[DetectionPipeline]:
        return self._guard

    async def evaluate_message(
        self,
        entity_id: str,
        content: str,
        community_id: str,
        attachments: Sequence[Attachment] | None = None,
    ) -> Verdict:
        return await self._guard.invoke(
            "evaluate_message",
            lambda p: p.evaluate_message(entity_id, content, community_id, attachments),
        )

    async def evaluate_join(
        self,
        entity_id: str,
        community_id: str,
        account_created_at: datetime,
        *,
        username: str = "",
    ) -> Verdict:
        return await self._guard.invoke(
            "evaluate_join",
            lambda p: p.evaluate_join(
                entity_id, community_id, account_created_at, username=username
            ),
        )

    def get_spam_config(self) -> SpamConfig:
        return self._guard.active.get_spam_config()

    def update_spam_config(self, changes: dict[str, Any]) -> SpamConfig:
        return self._guard.active.update_spam_config(changes)

    def get_raid_config(self) -> RaidConfig:
        return self._guard.active.get_raid_config()

    def update_raid_config(self, changes: dict[str, Any]) -> RaidConfig:
        return self._guard.active.update_raid_config(changes)

    def get_media_config(self) -> MediaConfig:
        return self._guard.active.get_media_config()

    def update_media_config(self, changes: dict[str, Any]) -> MediaConfig:
        return self._guard.active.update_media_config(changes)

    def get_warnings(self, entity_id: str, community_id: str) -> WarningState:
        return self._guard.active.get_warnings(entity_id, community_id)

    def reset_warnings(self, entity_id: str, community_id: str) -> bool:
        return self._guard.active.reset_warnings(entity_id, community_id)
