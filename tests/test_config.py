"""Tests for configuration management."""

import logging

import pytest
from pydantic import ValidationError


def create_test_settings(**kwargs):
    """Helper to create Settings instance without loading .env file."""
    from raidshield.config import Settings

    # Disable .env file loading for tests
    return Settings(_env_file=None, **kwargs)


class TestSettingsInitialization:
    """Tests for Settings initialization from environment variables."""

    def test_defaults(self) -> None:
        """Test Settings defaults without any overrides."""
        settings = create_test_settings(log_to_file=False)
        assert settings.default_aggressiveness_level == 5
        assert settings.circuit_error_threshold == 3
        assert settings.circuit_backup_count == 2
        assert settings.postgres_dsn is None
        assert settings.warning_decay_hours == 24
        assert settings.mute_duration_minutes == 10

    def test_settings_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test Settings picks up environment variables."""
        monkeypatch.setenv("OLLAMA_HOST", "classifier.internal")
        monkeypatch.setenv("OLLAMA_PORT", "9000")
        monkeypatch.setenv("CIRCUIT_BACKUP_COUNT", "0")
        monkeypatch.setenv("POSTGRES_DSN", "postgresql://u:p@db:5432/raidshield")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = create_test_settings()
        assert settings.ollama_url == "http://classifier.internal:9000"
        assert settings.circuit_backup_count == 0
        assert settings.postgres_dsn == "postgresql://u:p@db:5432/raidshield"
        assert settings.log_level == "DEBUG"

    def test_empty_dsn_is_none(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """An empty POSTGRES_DSN selects the in-memory store."""
        monkeypatch.setenv("POSTGRES_DSN", "")
        assert create_test_settings().postgres_dsn is None

    def test_log_file_paths(self) -> None:
        settings = create_test_settings(log_directory="/var/log/rs", log_file_prefix="shield")
        assert settings.log_file_path == "/var/log/rs/shield.log"
        assert settings.error_log_file_path == "/var/log/rs/shield_error.log"

    def test_is_development(self) -> None:
        assert create_test_settings(environment="Development").is_development
        assert not create_test_settings(environment="production").is_development


class TestSettingsValidation:
    """Tests for field validators."""

    @pytest.mark.parametrize("level", [0, 11])
    def test_aggressiveness_level_range(self, level: int) -> None:
        with pytest.raises(ValidationError):
            create_test_settings(default_aggressiveness_level=level)

    @pytest.mark.parametrize("budget", [-0.1, 1.5])
    def test_error_budget_range(self, budget: float) -> None:
        with pytest.raises(ValidationError):
            create_test_settings(circuit_error_budget=budget)

    @pytest.mark.parametrize(
        "field",
        ["circuit_error_threshold", "max_tracked_entities", "adaptive_history_limit"],
    )
    def test_positive_ints(self, field: str) -> None:
        with pytest.raises(ValidationError):
            create_test_settings(**{field: 0})

    def test_negative_backup_count(self) -> None:
        with pytest.raises(ValidationError):
            create_test_settings(circuit_backup_count=-1)

    def test_zero_backups_allowed(self) -> None:
        assert create_test_settings(circuit_backup_count=0).circuit_backup_count == 0

    def test_timeouts_positive(self) -> None:
        with pytest.raises(ValidationError):
            create_test_settings(circuit_call_timeout=0)

    def test_classifier_budget_below_circuit_timeout(self) -> None:
        settings = create_test_settings(circuit_call_timeout=8.0, classifier_call_timeout=5.0)
        assert settings.classifier_call_timeout < settings.circuit_call_timeout

    @pytest.mark.parametrize("budget", [8.0, 12.0])
    def test_classifier_budget_must_undercut_circuit_timeout(self, budget: float) -> None:
        with pytest.raises(ValidationError, match="classifier_call_timeout"):
            create_test_settings(circuit_call_timeout=8.0, classifier_call_timeout=budget)

    def test_classifier_budget_positive(self) -> None:
        with pytest.raises(ValidationError):
            create_test_settings(classifier_call_timeout=0)

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError):
            create_test_settings(log_level="LOUD")


class TestGetSettings:
    def test_cached(self) -> None:
        from raidshield.config import get_settings

        get_settings.cache_clear()
        assert get_settings() is get_settings()


class TestSetupLogging:
    """Tests for raidshield.logging.setup_logging."""

    def test_console_only(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from raidshield import logging as rs_logging

        settings = create_test_settings(log_to_file=False, log_level="WARNING")
        monkeypatch.setattr(rs_logging, "get_settings", lambda: settings)
        monkeypatch.setattr(logging.root, "handlers", [])

        rs_logging.setup_logging()

        assert len(logging.root.handlers) == 1
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_file_and_error_handlers(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        from raidshield import logging as rs_logging

        settings = create_test_settings(log_to_file=True, log_directory=str(tmp_path / "logs"))
        monkeypatch.setattr(rs_logging, "get_settings", lambda: settings)
        monkeypatch.setattr(logging.root, "handlers", [])

        rs_logging.setup_logging()

        levels = sorted(h.level for h in logging.root.handlers)
        assert len(levels) == 3
        assert levels[-1] == logging.WARNING
        assert (tmp_path / "logs").is_dir()
        for handler in logging.root.handlers:
            handler.close()
