"""Sync pipeline configuration."""

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ErpSyncConfig(BaseSettings):
    """Runtime config for the ERP sync pipeline."""

    model_config = SettingsConfigDict(env_prefix="ERPSYNC_")

    database_url: str = "sqlite+aiosqlite:///./erpsync.db"

    retry_max_attempts: int = Field(default=5, ge=1)
    retry_backoff_seconds: int = Field(default=60, ge=0)
    retry_max_backoff_seconds: int = Field(default=1200, ge=0)
    retry_jitter_ratio: float = Field(default=0.1, ge=0.0, le=1.0)
    auth_max_attempts: int = Field(default=3, ge=1)

    circuit_enabled: bool = True
    circuit_failure_threshold: int = Field(default=10, ge=1)
    circuit_window_seconds: int = Field(default=300, ge=1)
    circuit_cooldown_seconds: int = Field(default=120, ge=1)

    poll_interval_seconds: float = Field(default=10.0, gt=0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    batch_size: int = Field(default=10, ge=1)
    worker_concurrency: int = Field(default=4, ge=1)
    push_timeout_seconds: float = Field(default=30.0, gt=0)
    claim_lease_seconds: int = Field(default=300, ge=1)

    erp_delivered_status: str = "delivered"
    dolibarr_url: str = ""
    dolibarr_api_key: SecretStr = SecretStr("")
    blob_root: str = "./storage"

    log_level: str = "INFO"
