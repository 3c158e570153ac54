"""HARVEST — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Amazon Ads API ──
    ads_client_id: str = ""
    ads_access_token: str = ""
    ads_base_url: str = "https://advertising-api.amazon.com"

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True

    # ── Orchestrator ──
    provider_timeout_seconds: float = 30.0
    poll_interval_minutes: int = 5
    max_concurrent_reports: int = 5
    hourly_retention_days: int = 14
    daily_retention_days: int = 450  # 15 months * 30 days
    report_entity_types: List[str] = ["target"]

    # ── Schedules (cron, UTC) ──
    dispatch_cron: str = "*/5 * * * *"
    backfill_cron: str = "0 * * * *"
    stale_sweep_cron: str = "*/15 * * * *"

    # Rows stuck with refreshing=true are only reclaimed when this is on.
    stale_refresh_sweep_enabled: bool = False
    stale_refresh_minutes: int = 30

    # ── Events ──
    event_sweep_seconds: float = 30.0
    event_outbox_size: int = 256

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/harvest.db"
        return "sqlite:///./harvest.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
