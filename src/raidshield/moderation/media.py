"""Attachment download for image classification."""

from __future__ import annotations

from typing import Protocol

import httpx

from raidshield.config import get_settings
from raidshield.logging import get_logger
from raidshield.moderation.errors import AttachmentTooLargeError

log = get_logger("raidshield.moderation.media")


class AttachmentFetcher(Protocol):
    async def fetch(self, url: str) -> bytes:
        """Download *url*, raising :class:`AttachmentTooLargeError` past the cap."""
        ...


class HttpAttachmentFetcher:
    """Streams attachments with httpx, aborting once the size cap is passed."""

    def __init__(self, *, timeout: float | None = None, max_bytes: int | None = None) -> None:
        settings = get_settings()
        self._timeout = timeout or settings.attachment_fetch_timeout
        self._max_bytes = max_bytes or settings.attachment_max_bytes
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    async def fetch(self, url: str) -> bytes:
        client = await self._get_client()
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            declared = response.headers.get("content-length")
            if declared is not None and declared.isdigit() and int(declared) > self._max_bytes:
                raise AttachmentTooLargeError(url, self._max_bytes)

            chunks: list[bytes] = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > self._max_bytes:
                    raise AttachmentTooLargeError(url, self._max_bytes)
                chunks.append(chunk)

        log.debug("attachment_fetched", bytes=received)
        return b"".join(chunks)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
