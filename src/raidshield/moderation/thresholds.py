"""Global detection thresholds shared by every pipeline instance.

The three config models are pydantic models with ``validate_assignment``
enabled, so a partial update is applied one field at a time: a value that
fails validation is rejected and logged while the prior value is kept.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from raidshield.logging import get_logger

log = get_logger("raidshield.moderation.thresholds")


class NsfwSensitivity(StrEnum):
    NORMAL = "normal"
    MAXIMUM = "maximum"


# Minimum classifier confidence before an image is acted on
NSFW_CONFIDENCE_FLOORS: dict[NsfwSensitivity, float] = {
    NsfwSensitivity.NORMAL: 0.9,
    NsfwSensitivity.MAXIMUM: 0.8,
}

DEFAULT_SUSPICIOUS_PATTERNS = ["discord.gg/", "free nitro", "bit.ly/"]


class SpamConfig(BaseModel):
    """Community-wide spam ceilings (applied on top of the level profile)."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    max_messages_per_minute: int = Field(default=15, ge=1)
    max_duplicate_messages: int = Field(default=5, ge=1)
    max_mentions: int = Field(default=8, ge=0)
    max_links: int = Field(default=5, ge=0)
    cooldown_seconds: int = Field(default=5, ge=0, le=3600)


class RaidConfig(BaseModel):
    """Community-wide join-rate ceilings and suspicious name patterns."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    max_joins_per_minute: int = Field(default=12, ge=1)
    max_joins_per_hour: int = Field(default=20, ge=1)
    min_account_age_days: int = Field(default=7, ge=0, le=365)
    suspicious_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SUSPICIOUS_PATTERNS)
    )


class MediaConfig(BaseModel):
    """Attachment handling limits."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    nsfw_sensitivity: NsfwSensitivity = NsfwSensitivity.NORMAL
    max_attachments: int = Field(default=10, ge=1)
    max_url_length: int = Field(default=2000, ge=1)
    allowed_image_types: list[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"]
    )

    @property
    def nsfw_confidence_floor(self) -> float:
        return NSFW_CONFIDENCE_FLOORS[self.nsfw_sensitivity]


_ModelT = TypeVar("_ModelT", bound=BaseModel)


def apply_partial_update(model: _ModelT, changes: dict[str, Any], *, section: str) -> _ModelT:
    """Merge *changes* into *model* field by field.

    Unknown fields and values that fail validation are skipped with a
    warning; the remaining fields are still applied.

    Returns:
        The same model instance, updated in place.
    """
    for key, value in changes.items():
        if key not in type(model).model_fields:
            log.warning("config_update_unknown_field", section=section, field=key)
            continue
        old_value = getattr(model, key)
        try:
            setattr(model, key, value)
        except ValidationError as e:
            log.warning(
                "config_update_rejected",
                section=section,
                field=key,
                value=value,
                kept=old_value,
                error=str(e.errors()[0].get("msg", e)),
            )
            continue
        if getattr(model, key) != old_value:
            log.info(
                "config_updated",
                section=section,
                field=key,
                old_value=old_value,
                new_value=getattr(model, key),
            )
    return model


class ThresholdConfig:
    """Holder for the live spam, raid and media configuration.

    Reads return copies so callers can never mutate the shared state
    outside the update methods.
    """

    def __init__(
        self,
        spam: SpamConfig | None = None,
        raid: RaidConfig | None = None,
        media: MediaConfig | None = None,
    ) -> None:
        self._spam = spam or SpamConfig()
        self._raid = raid or RaidConfig()
        self._media = media or MediaConfig()

    # Live views used by the pipeline on the hot path (read-only by convention)

    @property
    def spam(self) -> SpamConfig:
        return self._spam

    @property
    def raid(self) -> RaidConfig:
        return self._raid

    @property
    def media(self) -> MediaConfig:
        return self._media

    def get_spam_config(self) -> SpamConfig:
        return self._spam.model_copy(deep=True)

    def update_spam_config(self, changes: dict[str, Any]) -> SpamConfig:
        apply_partial_update(self._spam, changes, section="spam")
        return self.get_spam_config()

    def get_raid_config(self) -> RaidConfig:
        return self._raid.model_copy(deep=True)

    def update_raid_config(self, changes: dict[str, Any]) -> RaidConfig:
        apply_partial_update(self._raid, changes, section="raid")
        return self.get_raid_config()

    def get_media_config(self) -> MediaConfig:
        return self._media.model_copy(deep=True)

    def update_media_config(self, changes: dict[str, Any]) -> MediaConfig:
        apply_partial_update(self._media, changes, section="media")
        return self.get_media_config()
