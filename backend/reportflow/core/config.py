from functools import lru_cache

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    postgres_user: str = Field("user", alias="POSTGRES_USER")
    postgres_password: str = Field("password", alias="POSTGRES_PASSWORD")
    postgres_host: str = Field("localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(5432, alias="POSTGRES_PORT")
    postgres_db: str = Field("reportflow", alias="POSTGRES_DB")

    database_url_override: str | None = Field(None, alias="DATABASE_URL")

    @computed_field
    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://"
            f"{self.postgres_user}:{self.postgres_password}@"
            f"{self.postgres_host}:{self.postgres_port}/"
            f"{self.postgres_db}"
        )

    backend_port: int = Field(8000, alias="BACKEND_PORT")
    backend_version: str = "0.1.0"
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Scheduler settings
    scheduler_enabled: bool = Field(True, alias="SCHEDULER_ENABLED")
    scheduler_poll_interval_seconds: int = Field(30, alias="SCHEDULER_POLL_INTERVAL_SECONDS")
    scheduler_batch_size: int = Field(100, alias="SCHEDULER_BATCH_SIZE")
    scheduler_max_concurrent_executions: int = Field(4, alias="SCHEDULER_MAX_CONCURRENT_EXECUTIONS")
    scheduler_execution_timeout_seconds: float = Field(300, alias="SCHEDULER_EXECUTION_TIMEOUT_SECONDS")
    scheduler_stale_execution_seconds: int = Field(1800, alias="SCHEDULER_STALE_EXECUTION_SECONDS")
    scheduler_catch_up_missed_runs: bool = Field(False, alias="SCHEDULER_CATCH_UP_MISSED_RUNS")
    scheduler_default_timezone: str = Field("America/New_York", alias="SCHEDULER_DEFAULT_TIMEZONE")

    # Schedule limits
    schedule_max_recipients: int = Field(5, alias="SCHEDULE_MAX_RECIPIENTS")
    schedule_max_active_per_tenant: int = Field(10, alias="SCHEDULE_MAX_ACTIVE_PER_TENANT")

    # External collaborators
    report_engine_url: str = Field("http://localhost:8100", alias="REPORT_ENGINE_URL")
    tenant_directory_url: str = Field("http://localhost:8200", alias="TENANT_DIRECTORY_URL")
    authorization_url: str = Field("http://localhost:8300", alias="AUTHORIZATION_URL")
    collaborator_timeout_seconds: float = Field(10, alias="COLLABORATOR_TIMEOUT_SECONDS")

    # Notification settings
    notifications_email_from: str = Field("reports@example.com", alias="NOTIFICATIONS_EMAIL_FROM")
    notifications_email_smtp_host: str = Field("localhost", alias="NOTIFICATIONS_EMAIL_SMTP_HOST")
    notifications_email_smtp_port: int = Field(25, alias="NOTIFICATIONS_EMAIL_SMTP_PORT")
    notifications_email_use_tls: bool = Field(False, alias="NOTIFICATIONS_EMAIL_USE_TLS")
    notifications_email_username: str = Field("", alias="NOTIFICATIONS_EMAIL_USERNAME")
    notifications_email_password: str = Field("", alias="NOTIFICATIONS_EMAIL_PASSWORD")


@lru_cache
def get_settings() -> Settings:
    return Settings()
