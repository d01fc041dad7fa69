from functools import lru_cache
from typing import Dict, List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global settings for the SignFlow engine.
    Values are read from the environment and from the .env file.
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
    allowed_origins: List[str] = []

    # Database
    database_url: str = "sqlite:///./signflow.db"

    # Object storage
    storage_backend: str = "local"
    storage_path: str = "_storage"
    s3_endpoint_url: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_bucket_documents: str = "signflow-documents"

    # E-mail (SMTP / SendGrid)
    email_backend: str = "smtp"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: Optional[str] = None
    smtp_starttls: bool = True
    sendgrid_api_key: Optional[str] = None

    # Public links sent in notifications
    public_app_url: str = "http://localhost:5173"

    # Outbound calls (storage, e-mail) and notification delivery
    network_timeout_seconds: float = 15.0
    notification_max_attempts: int = 3
    notification_batch_size: int = 200

    # Scheduler defaults
    expiry_warning_hours: int = 24
    deadline_warning_hours: int = 48
    auto_reminder_days: List[int] = [7, 3, 1]
    enable_auto_reminders: bool = True
    enable_expiry_warnings: bool = True
    enable_deadline_warnings: bool = True

    # Rendering
    date_format: str = "%Y-%m-%d"
    datetime_format: str = "%Y-%m-%d %H:%M UTC"
    render_header: str = "ELECTRONICALLY SIGNED DOCUMENT - SignFlow"
    # a claim older than this is treated as abandoned and may be taken again
    render_claim_timeout_seconds: int = 600
    render_verification_qr: bool = True

    # Step-up authentication (TOTP)
    totp_valid_window: int = 1
    # e-mail -> base32 secret, JSON encoded in the environment
    totp_secrets: Dict[str, str] = {}

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = "log/server.log"

    def resolved_public_app_url(self) -> str:
        """Base URL used for links embedded in notifications."""
        return (self.public_app_url or "").strip().rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Returns the cached global settings instance."""
    return Settings()


settings = get_settings()
