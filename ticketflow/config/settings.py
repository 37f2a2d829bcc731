"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "ticketflow_dev"

    # Tenancy / presentation
    tenant_id: str = "default"
    default_locale: str = "en"

    # Email channel (Microsoft Graph, service mailbox)
    aad_tenant_id: str = ""
    aad_client_id: str = ""
    aad_client_secret: str = ""
    service_mailbox_email: str = ""
    service_mailbox_password: str = ""

    # Telegram channel
    telegram_bot_token: str = ""
    telegram_api_base: str = "https://api.telegram.org"

    # Action execution bounds
    webhook_default_timeout_ms: int = 10000
    channel_default_timeout_ms: int = 10000
    action_worker_threads: int = 8

    # Script sandbox (custom conditions and script actions)
    script_timeout_ms: int = 2000
    script_memory_limit_mb: int = 256
    script_start_method: str = ""  # empty = fork where available, else spawn

    # History persistence
    history_write_attempts: int = 3
    history_retry_backoff_ms: int = 200

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"

    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"

    # Scheduler (automatic transitions + SLA sweeps)
    scheduler_enabled: bool = True
    automatic_transition_interval_seconds: int = 60
    automatic_transition_batch_size: int = 200
    sla_check_interval_seconds: int = 60
    sla_warning_minutes: int = 60

    # Actor used for scheduler-driven transitions
    system_user_id: str = "system"

    # Environment
    environment: str = "development"
    debug: bool = True

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def email_configured(self) -> bool:
        """Graph credentials present for the email channel"""
        return bool(self.aad_tenant_id and self.aad_client_id and self.service_mailbox_email)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
