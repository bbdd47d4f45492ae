"""
Unit tests for environment configuration.
"""

import pytest

from bizcard.cardcore.api.settings import Settings
from bizcard.cardcore.config import (
    OCC_RETRY_DEFAULTS,
    RetryConfig,
    ServerConfig,
    StoreConfig,
    TelemetryConfig,
)


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self, monkeypatch):
        for name in ("DATABASE_PATH", "RETRY_MAX_ATTEMPTS", "OCC_RETRY_MAX_ATTEMPTS",
                     "TELEMETRY_BUFFER_SIZE", "TELEMETRY_FLUSH_INTERVAL_SECONDS"):
            monkeypatch.delenv(name, raising=False)

        config = ServerConfig.from_env()

        assert config.retry == RetryConfig()
        assert config.occ_retry == OCC_RETRY_DEFAULTS
        assert config.telemetry.buffer_size == 100
        assert config.telemetry.flush_interval_seconds == 10.0
        assert config.telemetry.force_flush_attempts == 3

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_PATH", ":memory:")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("OCC_RETRY_MAX_ATTEMPTS", "8")
        monkeypatch.setenv("TELEMETRY_BUFFER_SIZE", "25")
        monkeypatch.setenv("TELEMETRY_ENABLED", "false")

        config = ServerConfig.from_env()

        assert config.store.database_path == ":memory:"
        assert config.store.wal_mode is False
        assert config.occ_retry.max_attempts == 8
        assert config.occ_retry.backoff_factor == OCC_RETRY_DEFAULTS.backoff_factor
        assert config.telemetry.buffer_size == 25
        assert config.telemetry.enabled is False

    @pytest.mark.parametrize(
        "config",
        [
            ServerConfig(retry=RetryConfig(max_attempts=0)),
            ServerConfig(occ_retry=RetryConfig(backoff_factor=0.5)),
            ServerConfig(retry=RetryConfig(initial_delay_ms=500, max_delay_ms=100)),
            ServerConfig(telemetry=TelemetryConfig(buffer_size=0)),
            ServerConfig(telemetry=TelemetryConfig(flush_interval_seconds=0)),
            ServerConfig(telemetry=TelemetryConfig(force_flush_attempts=0)),
        ],
    )
    def test_validate_rejects(self, config):
        with pytest.raises(ValueError):
            config.validate()

    def test_validate_accepts_memory_store(self):
        ServerConfig(store=StoreConfig(database_path=":memory:")).validate()


class TestHttpSettings:
    """Tests for the pydantic-settings HTTP configuration."""

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("CARDCORE_HTTP_PORT", "9090")
        monkeypatch.setenv("CARDCORE_HTTP_ACTOR_HEADER", "X-User")

        settings = Settings()

        assert settings.port == 9090
        assert settings.actor_header == "X-User"
        assert settings.bind_address == "0.0.0.0:9090"
