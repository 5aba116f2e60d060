"""
Configuration management using Pydantic Settings.
Loads environment variables from .env file.
"""
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EscalationLevelConfig(BaseModel):
    """One row of the escalation threshold table."""
    level: int = Field(..., ge=1)
    after_minutes: int = Field(..., gt=0)
    role: str = Field(..., min_length=1)


def _default_escalation_levels() -> list[EscalationLevelConfig]:
    return [
        EscalationLevelConfig(level=1, after_minutes=60, role="OPS_AGENT"),
        EscalationLevelConfig(level=2, after_minutes=240, role="OPS_HEAD"),
        EscalationLevelConfig(level=3, after_minutes=1440, role="SUPER_ADMIN"),
    ]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Ticketing Scheduler"
    app_version: str = "0.1.0"
    debug: bool = False

    # Supabase Configuration
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = "anon-key"
    supabase_service_role_key: Optional[str] = None  # Jobs prefer this when set
    db_timeout_seconds: float = 15.0  # Deadline for a single query

    # Scheduler Settings
    enable_scheduler: bool = True
    scheduler_timezone: str = "UTC"
    misfire_grace_seconds: int = 300

    # Only ONE worker should run the scheduler in multi-worker deployments.
    # Set RUN_SCHEDULER=true on exactly one container/worker.
    run_scheduler: bool = False

    # Comma-separated task names that are registered but not started
    disabled_jobs: str = ""

    # Job schedules (crontab or "every <n><s|m|h|d>")
    h1_reminder_schedule: str = "0 9 * * *"
    h0_reminder_schedule: str = "0 * * * *"
    notification_cleanup_schedule: str = "0 2 * * *"
    auto_escalation_schedule: str = "0 * * * *"
    payment_monitor_schedule: str = "*/2 * * * *"

    # Reminder windows
    h0_window_start_minutes: int = 60
    h0_window_end_minutes: int = 120

    # Cleanup
    notification_retention_days: int = 30

    # Escalation
    escalation_intake_hours: int = 24  # Draft/pending age before a case is opened
    escalation_levels: list[EscalationLevelConfig] = Field(
        default_factory=_default_escalation_levels
    )

    # Payment monitoring
    settlement_api_url: str = "http://localhost:8080"
    settlement_api_key: Optional[str] = None
    settlement_timeout_seconds: float = 10.0
    payment_pending_expiry_hours: int = 24
    payment_monitor_batch_size: int = 200
    payment_monitor_concurrency: int = 5

    # Job Monitoring
    job_failure_alert_threshold: int = 2  # Alert after this many failures
    ops_alert_user_id: Optional[str] = None  # Receives GENERAL notifications on repeated failures

    @property
    def disabled_job_list(self) -> list[str]:
        """Parse comma-separated disabled job names into a list."""
        return [name.strip() for name in self.disabled_jobs.split(",") if name.strip()]

    @property
    def supabase_key(self) -> str:
        """Key used by the scheduler's database client."""
        return self.supabase_service_role_key or self.supabase_anon_key


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.
    Call this function to get application settings.
    """
    return Settings()


# Global settings instance
settings = get_settings()
