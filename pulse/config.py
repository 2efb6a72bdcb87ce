"""PULSE — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Storage ──
    database_url: str = ""
    data_dir: str = ".pulse"
    encryption_key_path: str = ""

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    sync_interval_minutes: int = 60
    progress_sweep_minutes: int = 1

    # ── Sync Engine ──
    stale_sync_ttl_minutes: int = 10
    progress_idle_minutes: int = 10
    metric_chunk_size: int = 100
    sync_cooldown_seconds: int = 60
    default_lookback_days: int = 30

    # ── Provider HTTP ──
    http_timeout_seconds: float = 30.0
    http_max_retries: int = 3

    @property
    def effective_database_url(self) -> str:
        """Return the configured URL if set, otherwise SQLite inside the data dir."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{os.path.join(self.data_dir, 'data.db')}"

    @property
    def effective_key_path(self) -> str:
        """Location of the credential encryption key."""
        if self.encryption_key_path:
            return self.encryption_key_path
        return os.path.join(self.data_dir, ".encryption_key")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
