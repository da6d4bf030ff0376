"""Exceptions raised by the moderation pipeline."""


class ModerationError(Exception):
    """Base class for moderation pipeline errors."""

    pass


class InvalidEventError(ModerationError, ValueError):
    """An inbound event is malformed and cannot be evaluated."""

    pass


class AttachmentTooLargeError(ModerationError):
    """An attachment exceeded the configured download cap."""

    def __init__(self, url: str, limit: int) -> None:
        self.url = url
        self.limit = limit
        super().__init__(f"Attachment exceeds {limit} bytes: {url[:100]}")
