"""Engine configuration."""

import os
from typing import Dict, Mapping, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "TRACKMUX_"


class QueueConfig(BaseModel):
    """Job queue and worker settings."""

    max_attempts: int = Field(ge=1, default=3)
    backoff_base_ms: int = Field(ge=0, default=2000)   # Doubles on each retry
    rate_limit_max_jobs: int = Field(ge=1, default=10)
    rate_limit_period_seconds: float = Field(gt=0, default=60.0)
    poll_interval_seconds: float = Field(gt=0, default=1.0)
    storage_timeout_seconds: float = Field(gt=0, default=10.0)
    max_stalled_count: int = Field(ge=0, default=3)
    keep_completed_count: int = 50
    keep_completed_seconds: int = 24 * 3600
    keep_failed_count: int = 50
    keep_failed_seconds: int = 7 * 24 * 3600


class ProviderConfig(BaseModel):
    """Upstream subscription provider settings."""

    base_url: str = "https://api.neynar.com/v2/farcaster"
    api_key: str = ""
    target_url: str = "http://localhost:8000/provider/events"
    webhook_name: str = "trackmux webhook"
    event_type: str = "trade.created"
    timeout_seconds: float = Field(gt=0, default=15.0)
    max_filter_size: Optional[int] = Field(ge=1, default=None)


class ThresholdConfig(BaseModel):
    """Thresholds used when the subscription is first created."""

    min_score: Optional[float] = None
    min_amount_usd: Optional[float] = None


class ApiConfig(BaseModel):
    """Shared secrets for inbound HTTP traffic."""

    api_secret: Optional[str] = None        # Checked against x-api-secret
    webhook_secret: Optional[str] = None    # Signs inbound provider events


class EngineConfig(BaseModel):
    """Top-level configuration for a deployment."""

    db_path: str = "trackmux.db"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    resync_cron: Optional[str] = "*/30 * * * *"
    queue: QueueConfig = QueueConfig()
    provider: ProviderConfig = ProviderConfig()
    thresholds: ThresholdConfig = ThresholdConfig()
    api: ApiConfig = ApiConfig()

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        load_env_file: bool = True,
    ) -> "EngineConfig":
        """Build a config from TRACKMUX_* variables (and a .env file if present)."""
        if environ is None:
            if load_env_file:
                dotenv_path = find_dotenv(usecwd=True)
                if dotenv_path:
                    load_dotenv(dotenv_path)
            environ = os.environ

        def pick(mapping: Dict[str, str]) -> Dict[str, str]:
            values = {}
            for field_name, var in mapping.items():
                raw = environ.get(ENV_PREFIX + var)
                if raw is not None and raw != "":
                    values[field_name] = raw
            return values

        data: Dict[str, object] = pick({
            "db_path": "DB_PATH",
            "host": "HOST",
            "port": "PORT",
            "log_level": "LOG_LEVEL",
            "resync_cron": "RESYNC_CRON",
        })
        if data.get("resync_cron", "").lower() in ("off", "none", "disabled"):
            data["resync_cron"] = None
        data["queue"] = pick({
            "max_attempts": "QUEUE_MAX_ATTEMPTS",
            "backoff_base_ms": "QUEUE_BACKOFF_MS",
            "rate_limit_max_jobs": "QUEUE_RATE_MAX_JOBS",
            "rate_limit_period_seconds": "QUEUE_RATE_PERIOD_SECONDS",
            "storage_timeout_seconds": "STORAGE_TIMEOUT_SECONDS",
        })
        data["provider"] = pick({
            "base_url": "PROVIDER_BASE_URL",
            "api_key": "PROVIDER_API_KEY",
            "target_url": "WEBHOOK_TARGET_URL",
            "webhook_name": "WEBHOOK_NAME",
            "event_type": "EVENT_TYPE",
            "timeout_seconds": "PROVIDER_TIMEOUT_SECONDS",
            "max_filter_size": "MAX_FILTER_SIZE",
        })
        data["thresholds"] = pick({
            "min_score": "MIN_SCORE",
            "min_amount_usd": "MIN_AMOUNT_USD",
        })
        data["api"] = pick({
            "api_secret": "API_SECRET",
            "webhook_secret": "WEBHOOK_SECRET",
        })
        return cls.model_validate(data)
