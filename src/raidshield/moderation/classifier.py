"""AI threat classification via Ollama.

The classifier is treated as fallible and slow. The pipeline catches every
error raised here and degrades to ``allow``; this client only validates and
clamps what the model returns.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

import httpx

from raidshield.config import get_settings
from raidshield.logging import get_logger
from raidshield.moderation.models import (
    BypassClassification,
    BypassPattern,
    ContentClassification,
    ImageClassification,
    Severity,
)

log = get_logger("raidshield.moderation.classifier")


class ThreatClassifier(Protocol):
    """Contract for the external AI classifier."""

    async def classify_bypass(
        self, content: str, known_patterns: list[BypassPattern]
    ) -> BypassClassification: ...

    async def classify_content(
        self, content: str, recent_history: list[str]
    ) -> ContentClassification: ...

    async def classify_image(self, image_base64: str) -> ImageClassification: ...


_BYPASS_PROMPT = """\
You are a moderation assistant for a community chat server. Decide whether the \
message below is trying to evade a word filter or moderation rules (spacing \
tricks, homoglyphs, zero-width characters, deliberate misspellings, encoded text).

Known evasion patterns:
{patterns}

Message:
---
{message}
---

Respond with ONLY a JSON object:
{{"is_bypass": false, "confidence": 0.0, "technique": "", "pattern": "", \
"countermeasure": ""}}
"""

_CONTENT_PROMPT = """\
You are a moderation assistant for a community chat server. Assess the message \
below for harassment, threats, scams, self-harm encouragement, hate speech or \
coordinated abuse. Use the author's recent messages as context.

Recent messages from the author:
{history}

Message:
---
{message}
---

Respond with ONLY a JSON object:
{{"confidence": 0.0, "threat_level": "low", "threat_type": "none", \
"reasoning": "Brief explanation"}}
threat_level must be one of: low, medium, high, critical.
"""

_IMAGE_PROMPT = """\
Classify this image for a community chat server. Decide whether it contains \
sexual or graphic content that is not safe for work.

Respond with ONLY a JSON object:
{"is_nsfw": false, "confidence": 0.0, "categories": []}
"""


def _clamp(value: Any) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


class OllamaThreatClassifier:
    """Ollama-backed implementation of :class:`ThreatClassifier`."""

    def __init__(
        self,
        *,
        url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_content_length: int | None = None,
    ) -> None:
        settings = get_settings()
        self._url = url or settings.ollama_url
        self._model = model or settings.ollama_model
        self._timeout = timeout or settings.ollama_timeout
        self._max_content_length = max_content_length or settings.max_content_length
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _generate(self, prompt: str, images: list[str] | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "keep_alive": "10m",
            "options": {
                "temperature": 0.1,
                "num_predict": 200,
            },
        }
        if images:
            payload["images"] = images

        client = await self._get_client()
        response = await client.post(f"{self._url}/api/generate", json=payload)
        response.raise_for_status()
        result_text = response.json().get("response", "").strip()
        result = json.loads(result_text)
        if not isinstance(result, dict):
            raise ValueError(f"Classifier returned {type(result).__name__}, expected object")
        return result

    async def classify_bypass(
        self, content: str, known_patterns: list[BypassPattern]
    ) -> BypassClassification:
        patterns_text = "\n".join(
            f"- {p.name}: {p.pattern}" + (f" ({p.technique})" if p.technique else "")
            for p in known_patterns[:50]
        )
        result = await self._generate(
            _BYPASS_PROMPT.format(
                patterns=patterns_text or "None",
                message=content[: self._max_content_length],
            )
        )
        classification = BypassClassification(
            is_bypass=bool(result.get("is_bypass", False)),
            confidence=_clamp(result.get("confidence", 0.0)),
            technique=str(result.get("technique", ""))[:100],
            pattern=str(result.get("pattern", ""))[:200],
            countermeasure=str(result.get("countermeasure", ""))[:200],
        )
        log.debug(
            "bypass_classified",
            is_bypass=classification.is_bypass,
            confidence=classification.confidence,
        )
        return classification

    async def classify_content(
        self, content: str, recent_history: list[str]
    ) -> ContentClassification:
        history_text = "\n".join(f"- {m[:200]}" for m in recent_history[-5:])
        result = await self._generate(
            _CONTENT_PROMPT.format(
                history=history_text or "None",
                message=content[: self._max_content_length],
            )
        )
        try:
            threat_level: Severity | None = Severity(str(result.get("threat_level", "")).lower())
        except ValueError:
            threat_level = None
        classification = ContentClassification(
            confidence=_clamp(result.get("confidence", 0.0)),
            threat_level=threat_level,
            threat_type=str(result.get("threat_type", ""))[:50],
            reasoning=str(result.get("reasoning", ""))[:300],
        )
        log.debug(
            "content_classified",
            confidence=classification.confidence,
            threat_level=classification.threat_level,
        )
        return classification

    async def classify_image(self, image_base64: str) -> ImageClassification:
        result = await self._generate(_IMAGE_PROMPT, images=[image_base64])
        categories = result.get("categories", [])
        return ImageClassification(
            is_nsfw=bool(result.get("is_nsfw", False)),
            confidence=_clamp(result.get("confidence", 0.0)),
            categories=[str(c) for c in categories] if isinstance(categories, list) else [],
        )

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
