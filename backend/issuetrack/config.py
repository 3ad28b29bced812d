from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "issuetrack"
    environment: str = "development"  # development | production | test
    log_level: str = "INFO"

    database_url: str = "sqlite:///./issuetrack.db"

    # Used to build links in notification e-mails
    public_base_url: str = "http://localhost:8000"

    # Base URL the client SDK forwards reports to
    api_base_url: str = "http://localhost:8000"

    # SMTP transport (e-mail is console-only when smtp_host/smtp_user are unset)
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from_address: str | None = None

    # Twilio transport
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None

    notification_max_retries: int = 3
    notification_retry_interval_sec: int = 60
    # a delivery claim older than this is considered abandoned
    notification_lock_seconds: int = 300

    # Seeded on first start
    admin_email: str | None = None
    admin_name: str = "Admin"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


settings = Settings()
