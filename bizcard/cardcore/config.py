"""
Configuration management for CardCore.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Retry and telemetry defaults match the documented contracts
      (3 attempts x2 for store calls, 5 attempts x1.5 for version conflicts,
      flush every 10s or 100 events, 3 forced flush attempts at shutdown)

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep from_env() and the dataclass defaults in sync
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StoreConfig:
    """Record store configuration.

    Attributes:
        database_path: SQLite database file
        busy_timeout_ms: SQLite busy timeout in milliseconds
        wal_mode: SQLite WAL journal mode enabled
    """

    database_path: str = "./data/cardcore.db"
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        return cls(
            database_path=os.getenv("DATABASE_PATH", "./data/cardcore.db"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
        )


@dataclass(frozen=True)
class RetryConfig:
    """Backoff settings for one retry profile.

    Attributes:
        max_attempts: Maximum invocations of the operation
        initial_delay_ms: Delay before the second attempt
        max_delay_ms: Upper bound for any single delay
        backoff_factor: Multiplier applied to the delay after each retry
    """

    max_attempts: int = 3
    initial_delay_ms: int = 100
    max_delay_ms: int = 2000
    backoff_factor: float = 2.0

    @classmethod
    def from_env(cls, prefix: str = "RETRY", defaults: RetryConfig | None = None) -> RetryConfig:
        """Load configuration from environment variables.

        Args:
            prefix: Variable prefix (RETRY or OCC_RETRY)
            defaults: Values used when a variable is unset
        """
        base = defaults or cls()
        return cls(
            max_attempts=int(os.getenv(f"{prefix}_MAX_ATTEMPTS", str(base.max_attempts))),
            initial_delay_ms=int(
                os.getenv(f"{prefix}_INITIAL_DELAY_MS", str(base.initial_delay_ms))
            ),
            max_delay_ms=int(os.getenv(f"{prefix}_MAX_DELAY_MS", str(base.max_delay_ms))),
            backoff_factor=float(
                os.getenv(f"{prefix}_BACKOFF_FACTOR", str(base.backoff_factor))
            ),
        )


OCC_RETRY_DEFAULTS = RetryConfig(
    max_attempts=5,
    initial_delay_ms=50,
    max_delay_ms=1000,
    backoff_factor=1.5,
)


@dataclass(frozen=True)
class TelemetryConfig:
    """Buffered analytics pipeline configuration.

    Attributes:
        enabled: Whether view/download events are recorded
        table: Destination table for flushed events
        buffer_size: Buffer length that triggers a flush
        flush_interval_seconds: Interval of the periodic flush timer
        force_flush_attempts: Flush attempts made at shutdown
        force_flush_delay_seconds: Wait between shutdown flush attempts
    """

    enabled: bool = True
    table: str = "card_analytics"
    buffer_size: int = 100
    flush_interval_seconds: float = 10.0
    force_flush_attempts: int = 3
    force_flush_delay_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> TelemetryConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("TELEMETRY_ENABLED", "true"),
            table=os.getenv("TELEMETRY_TABLE", "card_analytics"),
            buffer_size=int(os.getenv("TELEMETRY_BUFFER_SIZE", "100")),
            flush_interval_seconds=float(os.getenv("TELEMETRY_FLUSH_INTERVAL_SECONDS", "10")),
            force_flush_attempts=int(os.getenv("TELEMETRY_FORCE_FLUSH_ATTEMPTS", "3")),
            force_flush_delay_seconds=float(
                os.getenv("TELEMETRY_FORCE_FLUSH_DELAY_SECONDS", "1")
            ),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    HTTP bind settings live in api/settings.py and are loaded by
    pydantic-settings when the application is created.

    Attributes:
        store: Record store configuration
        retry: Retry profile for generic store calls
        occ_retry: Retry profile for version-conflict-prone saves
        telemetry: Analytics pipeline configuration
        observability: Logging configuration
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    occ_retry: RetryConfig = field(default_factory=lambda: OCC_RETRY_DEFAULTS)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            store=StoreConfig.from_env(),
            retry=RetryConfig.from_env("RETRY"),
            occ_retry=RetryConfig.from_env("OCC_RETRY", OCC_RETRY_DEFAULTS),
            telemetry=TelemetryConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        for name, retry in (("RETRY", self.retry), ("OCC_RETRY", self.occ_retry)):
            if retry.max_attempts < 1:
                raise ValueError(f"{name}_MAX_ATTEMPTS must be at least 1")
            if retry.backoff_factor < 1.0:
                raise ValueError(f"{name}_BACKOFF_FACTOR must be >= 1.0")
            if retry.initial_delay_ms < 0 or retry.max_delay_ms < retry.initial_delay_ms:
                raise ValueError(f"{name}_MAX_DELAY_MS must be >= {name}_INITIAL_DELAY_MS")

        if self.telemetry.buffer_size < 1:
            raise ValueError("TELEMETRY_BUFFER_SIZE must be at least 1")
        if self.telemetry.flush_interval_seconds <= 0:
            raise ValueError("TELEMETRY_FLUSH_INTERVAL_SECONDS must be positive")
        if self.telemetry.force_flush_attempts < 1:
            raise ValueError("TELEMETRY_FORCE_FLUSH_ATTEMPTS must be at least 1")

        if self.store.database_path != ":memory:":
            parent = Path(self.store.database_path).parent
            if not parent.exists():
                logger.warning(
                    f"Database directory does not exist: {parent}. "
                    "It will be created on first connect."
                )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "database_path": self.store.database_path,
                "retry_max_attempts": self.retry.max_attempts,
                "occ_retry_max_attempts": self.occ_retry.max_attempts,
                "telemetry_enabled": self.telemetry.enabled,
                "telemetry_buffer_size": self.telemetry.buffer_size,
                "telemetry_flush_interval": self.telemetry.flush_interval_seconds,
                "log_level": self.observability.log_level,
            },
        )
