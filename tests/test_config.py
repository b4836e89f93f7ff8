"""Tests for environment-driven configuration."""

import pytest
from pydantic import ValidationError

from trackmux.models.config import EngineConfig


class TestFromEnv:
    def test_defaults(self):
        config = EngineConfig.from_env(environ={})
        assert config.queue.max_attempts == 3
        assert config.queue.backoff_base_ms == 2000
        assert config.queue.rate_limit_max_jobs == 10
        assert config.queue.rate_limit_period_seconds == 60
        assert config.resync_cron == "*/30 * * * *"
        assert config.provider.max_filter_size is None
        assert config.api.api_secret is None

    def test_reads_prefixed_variables(self):
        config = EngineConfig.from_env(environ={
            "TRACKMUX_DB_PATH": "/tmp/x.db",
            "TRACKMUX_PORT": "9000",
            "TRACKMUX_QUEUE_MAX_ATTEMPTS": "5",
            "TRACKMUX_PROVIDER_API_KEY": "abc",
            "TRACKMUX_MAX_FILTER_SIZE": "1000",
            "TRACKMUX_MIN_SCORE": "0.7",
            "TRACKMUX_API_SECRET": "s",
            "TRACKMUX_WEBHOOK_SECRET": "w",
            "UNRELATED": "ignored",
        })
        assert config.db_path == "/tmp/x.db"
        assert config.port == 9000
        assert config.queue.max_attempts == 5
        assert config.provider.api_key == "abc"
        assert config.provider.max_filter_size == 1000
        assert config.thresholds.min_score == 0.7
        assert config.api.api_secret == "s"
        assert config.api.webhook_secret == "w"

    def test_empty_values_fall_back_to_defaults(self):
        config = EngineConfig.from_env(environ={"TRACKMUX_PORT": ""})
        assert config.port == 8000

    def test_resync_can_be_disabled(self):
        config = EngineConfig.from_env(environ={"TRACKMUX_RESYNC_CRON": "off"})
        assert config.resync_cron is None

    def test_invalid_value_raises(self):
        with pytest.raises(ValidationError):
            EngineConfig.from_env(environ={"TRACKMUX_QUEUE_MAX_ATTEMPTS": "0"})

    def test_loads_env_file(self, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("TRACKMUX_PORT=8123\n")
        monkeypatch.chdir(tmp_path)
        # Registered first so teardown removes what the .env file sets
        monkeypatch.setenv("TRACKMUX_PORT", "unset")
        monkeypatch.delenv("TRACKMUX_PORT")

        config = EngineConfig.from_env()
        assert config.port == 8123
