"""Pytest fixtures for RaidShield tests."""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from raidshield.moderation.models import (
    BypassClassification,
    ContentClassification,
    ImageClassification,
)


class ManualClock:
    """Controllable time source: call for epoch seconds, ``.now()`` for a datetime."""

    def __init__(self, start: float = 1_767_225_600.0) -> None:  # 2026-01-01T00:00:00Z
        self.current = start

    def __call__(self) -> float:
        return self.current

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.current, UTC)

    def advance(self, seconds: float = 0, **kwargs: float) -> None:
        self.current += seconds + timedelta(**kwargs).total_seconds()


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any imports.

    Keeps tests from writing log files and from reaching a real classifier.
    """
    os.environ.setdefault("LOG_TO_FILE", "false")
    os.environ.setdefault("CLASSIFIER_ENABLED", "false")
    os.environ.setdefault("ENVIRONMENT", "test")

    # Clear the settings cache to ensure tests start fresh
    from raidshield.config import get_settings

    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def test_settings():
    """Settings with defaults suitable for tests."""
    from raidshield.config import Settings

    return Settings(
        environment="test",
        log_level="DEBUG",
        log_to_file=False,
        classifier_enabled=False,
        postgres_dsn=None,
    )


@pytest.fixture
def store():
    from raidshield.moderation.store import InMemoryThreatStore

    return InMemoryThreatStore()


@pytest.fixture
def mock_classifier():
    """Classifier that reports nothing unless a test reconfigures it."""
    classifier = AsyncMock()
    classifier.classify_bypass = AsyncMock(return_value=BypassClassification())
    classifier.classify_content = AsyncMock(return_value=ContentClassification())
    classifier.classify_image = AsyncMock(return_value=ImageClassification())
    return classifier


@pytest.fixture
def mock_fetcher():
    fetcher = AsyncMock()
    fetcher.fetch = AsyncMock(return_value=b"\x89PNG fake image bytes")
    return fetcher


@pytest.fixture
def thresholds():
    from raidshield.moderation.thresholds import ThresholdConfig

    return ThresholdConfig()


@pytest.fixture
def pipeline(store, thresholds, clock):
    """DetectionPipeline without a classifier, driven by the manual clock."""
    from raidshield.moderation.pipeline import DetectionPipeline
    from raidshield.moderation.state import ModerationState

    return DetectionPipeline(
        thresholds=thresholds,
        store=store,
        state=ModerationState(clock=clock),
        now=clock.now,
    )
