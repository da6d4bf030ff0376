"""Configuration management for RaidShield."""

from __future__ import annotations

from functools import lru_cache
from typing import Self

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Logging Configuration
    log_to_file: bool = Field(default=True, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=52428800,  # 50MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=10, description="Number of rotated log files to keep"
    )
    log_error_file_enabled: bool = Field(
        default=True, description="Enable separate error log file (WARNING+)"
    )
    log_file_prefix: str = Field(default="raidshield", description="Prefix for log file names")

    # AI classifier (Ollama)
    classifier_enabled: bool = Field(
        default=True, description="Send content to the external AI classifier"
    )
    ollama_host: str = Field(default="ollama", description="Ollama classifier host")
    ollama_port: int = Field(default=11434, description="Ollama classifier API port")
    ollama_model: str = Field(
        default="llama3.2:3b", description="Ollama model used for threat classification"
    )
    ollama_timeout: int = Field(default=30, description="Ollama API timeout in seconds")
    classifier_call_timeout: float = Field(
        default=5.0,
        description="Time budget in seconds for all classifier and attachment calls on one message",
    )

    # Attachment fetching
    attachment_fetch_timeout: float = Field(
        default=15.0, description="Timeout in seconds for downloading an attachment"
    )
    attachment_max_bytes: int = Field(
        default=10 * 1024 * 1024, description="Largest attachment passed to the image classifier"
    )

    # Circuit breaker / failover
    circuit_error_threshold: int = Field(
        default=3, description="Failures in CLOSED state before the circuit opens"
    )
    circuit_call_timeout: float = Field(
        default=8.0, description="Hard timeout in seconds for a single guarded call"
    )
    circuit_reset_timeout: float = Field(
        default=30.0, description="Seconds the circuit stays OPEN before probing recovery"
    )
    circuit_half_open_max_attempts: int = Field(
        default=2, description="Successful probes required in HALF_OPEN to close the circuit"
    )
    circuit_rolling_window_size: int = Field(
        default=50, description="Maximum number of failure timestamps kept for metrics"
    )
    circuit_error_budget: float = Field(
        default=0.15, description="Tolerated failure ratio over the last hour (0.0-1.0)"
    )
    circuit_backup_count: int = Field(
        default=2, description="Number of standby pipeline instances"
    )
    circuit_monitor_interval: float = Field(
        default=10.0, description="Seconds between background OPEN -> HALF_OPEN checks"
    )

    # Moderation
    default_aggressiveness_level: int = Field(
        default=5, description="Aggressiveness level for communities without configuration"
    )
    max_tracked_entities: int = Field(
        default=10000, description="Upper bound on entities kept in each sliding-window map"
    )
    state_sweep_interval: int = Field(
        default=300, description="Seconds between sweeps of sliding-window and warning state"
    )
    warning_decay_hours: int = Field(
        default=24, description="Hours of inactivity after which warnings reset"
    )
    mute_duration_minutes: int = Field(
        default=10, description="Mute length after the third warning"
    )
    max_content_length: int = Field(
        default=2000, description="Message content is truncated to this many characters"
    )
    shadow_mode_auto_disable_hours: int = Field(
        default=24, description="Hours after which shadow mode switches itself off"
    )

    # Adaptive tuning
    adaptive_tuning_enabled: bool = Field(
        default=True, description="Run the adaptive tuner on a fixed interval"
    )
    adaptive_interval_seconds: int = Field(
        default=3600, description="Seconds between adaptive tuning runs"
    )
    adaptive_history_limit: int = Field(
        default=1000, description="Historical records loaded per tuning run"
    )
    adaptive_adjustment_retention: int = Field(
        default=500, description="Threshold adjustments kept in the in-memory log"
    )

    # Storage
    postgres_dsn: str | None = Field(
        default=None,
        description="PostgreSQL connection string (in-memory store when unset)",
    )

    @field_validator("default_aggressiveness_level")
    @classmethod
    def validate_aggressiveness_level(cls, v: int) -> int:
        """Validate the default aggressiveness level is between 1 and 10."""
        if not 1 <= v <= 10:
            raise ValueError(f"default_aggressiveness_level must be between 1 and 10, got: {v}")
        return v

    @field_validator("circuit_error_budget")
    @classmethod
    def validate_float_0_1(cls, v: float) -> float:
        """Validate float values are between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError(f"Value must be between 0 and 1, got: {v}")
        return v

    @field_validator(
        "circuit_error_threshold",
        "circuit_half_open_max_attempts",
        "circuit_rolling_window_size",
        "max_tracked_entities",
        "state_sweep_interval",
        "adaptive_interval_seconds",
        "adaptive_history_limit",
        "adaptive_adjustment_retention",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate counts and intervals are positive."""
        if v <= 0:
            raise ValueError(f"Value must be positive, got: {v}")
        return v

    @field_validator("circuit_backup_count")
    @classmethod
    def validate_backup_count(cls, v: int) -> int:
        """Validate the standby instance count is not negative."""
        if v < 0:
            raise ValueError(f"circuit_backup_count must be >= 0, got: {v}")
        return v

    @field_validator(
        "circuit_call_timeout",
        "circuit_reset_timeout",
        "circuit_monitor_interval",
        "classifier_call_timeout",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate timeouts are positive."""
        if v <= 0:
            raise ValueError(f"Timeout must be positive, got: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate the log level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got: {v}")
        return v.upper()

    @model_validator(mode="after")
    def validate_classifier_budget(self) -> Self:
        """Keep slow classifier calls from tripping the circuit breaker."""
        if self.classifier_call_timeout >= self.circuit_call_timeout:
            raise ValueError(
                "classifier_call_timeout must be below circuit_call_timeout, got: "
                f"{self.classifier_call_timeout} >= {self.circuit_call_timeout}"
            )
        return self

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}.log"

    @property
    def error_log_file_path(self) -> str:
        """Get the error log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}_error.log"

    @property
    def ollama_url(self) -> str:
        """Get the full Ollama URL."""
        return f"http://{self.ollama_host}:{self.ollama_port}"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
