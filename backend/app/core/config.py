from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global SignFlow settings.
    Values are read from environment variables and the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    project_name: str = "SignFlow API"
    api_v1_str: str = "/api/v1"
    debug: bool = False

    # Bearer tokens (issued elsewhere, verified here)
    secret_key: str = "changeme"
    access_token_expire_minutes: int = 60
    algorithm: str = "HS256"

    # Database
    database_url: str = "sqlite:///./dev.db"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Storage for generated artifacts
    signflow_storage: str = "_storage"
    s3_endpoint_url: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_bucket_artifacts: str = "signflow-artifacts"

    # CORS
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    # Second factor
    two_factor_issuer: str = "SignFlow"
    totp_valid_window: int = 1
    backup_code_count: int = 10

    # Workflow
    transition_max_retries: int = 3
    reminder_interval_hours: int = 24
    expiry_warning_hours: int = 24
    default_expiry_days: int = 30

    # Notifications
    notification_max_retries: int = 3
    email_backend: str = "smtp"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: Optional[str] = None
    smtp_starttls: bool = True
    sendgrid_api_key: Optional[str] = None
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None
    twilio_messaging_service_sid: Optional[str] = None
    delivery_callback_token: Optional[str] = None

    # Public links sent in e-mails
    public_app_url: str = "http://localhost:5173"

    # Completion artifacts
    artifact_max_attempts: int = 3
    # A generating claim older than this is treated as abandoned
    artifact_claim_lease_seconds: int = 900

    # Reconciliation timer
    scheduler_enabled: bool = False
    scheduler_interval_seconds: int = 300

    def resolved_public_app_url(self) -> str:
        return (self.public_app_url or "").strip().rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Return the cached global settings instance."""
    return Settings()


settings = get_settings()
