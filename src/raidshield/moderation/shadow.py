"""Shadow mode: observe verdicts without enforcing them.

Activations carry an expiry timestamp and lapse on their own; nothing is
scheduled, the expiry is checked whenever the mode is consulted.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from raidshield.logging import get_logger
from raidshield.moderation.models import ModerationAction, Verdict

log = get_logger("raidshield.moderation.shadow")

OBSERVED_ACTION = "observed"


@dataclass
class ShadowActivation:
    enabled_by: str
    enabled_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled_by": self.enabled_by,
            "enabled_at": self.enabled_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


class ShadowMode:
    """Global or per-community observation mode."""

    def __init__(
        self,
        *,
        auto_disable_hours: int = 24,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._duration = timedelta(hours=auto_disable_hours)
        self._now = now
        self._global: ShadowActivation | None = None
        self._communities: dict[str, ShadowActivation] = {}

    def enable(self, community_id: str | None = None, *, enabled_by: str = "system") -> datetime:
        """Activate shadow mode globally (no community) or for one community.

        Returns:
            When the activation lapses.
        """
        now = self._now()
        activation = ShadowActivation(
            enabled_by=enabled_by, enabled_at=now, expires_at=now + self._duration
        )
        if community_id is None:
            self._global = activation
        else:
            self._communities[community_id] = activation
        log.warning(
            "shadow_mode_enabled",
            community_id=community_id or "global",
            enabled_by=enabled_by,
            expires_at=activation.expires_at.isoformat(),
        )
        return activation.expires_at

    def disable(self, community_id: str | None = None) -> bool:
        if community_id is None:
            was_active = self._global is not None
            self._global = None
        else:
            was_active = self._communities.pop(community_id, None) is not None
        if was_active:
            log.info("shadow_mode_disabled", community_id=community_id or "global")
        return was_active

    def is_active(self, community_id: str) -> bool:
        self._expire()
        return self._global is not None or community_id in self._communities

    def status(self) -> dict[str, Any]:
        self._expire()
        return {
            "global": self._global.to_dict() if self._global else None,
            "communities": {cid: a.to_dict() for cid, a in self._communities.items()},
        }

    def apply(self, community_id: str, verdict: Verdict) -> Verdict:
        """Downgrade a non-allow verdict to ``allow`` while shadow mode is active."""
        if verdict.is_allow or not self.is_active(community_id):
            return verdict
        log.info(
            "shadow_mode_observed",
            community_id=community_id,
            original_action=verdict.action.value,
            threat_type=verdict.threat_type.value,
        )
        return dataclasses.replace(
            verdict,
            action=ModerationAction.ALLOW,
            evidence={
                **verdict.evidence,
                "shadow_mode": True,
                "original_action": verdict.action.value,
            },
        )

    def _expire(self) -> None:
        now = self._now()
        if self._global is not None and self._global.expires_at <= now:
            log.info("shadow_mode_expired", community_id="global")
            self._global = None
        for community_id in [c for c, a in self._communities.items() if a.expires_at <= now]:
            log.info("shadow_mode_expired", community_id=community_id)
            del self._communities[community_id]
