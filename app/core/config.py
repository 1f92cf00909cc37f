"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str
    DB_CREATE_ALL: bool = False  # Create tables on startup (dev/test only; otherwise `alembic upgrade head`)
    SEARCH_STATEMENT_TIMEOUT_MS: int = 10000  # PostgreSQL statement_timeout for search
    SLOW_QUERY_MS: int = 100

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Public base URL (tracking pixel links)
    SERVER_URL: str = "http://localhost:8000"

    # Outbound email
    MAIL_TRANSPORT: str = "resend"  # resend | smtp
    EMAIL_FROM: str = "support@example.com"  # Shared inbox, used when agent has no agent_email
    EMAIL_FROM_NAME: str = "Support"
    RESEND_API_KEY: str = ""
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_SECURE: bool = False  # Implicit TLS (port 465); STARTTLS otherwise
    MAIL_TIMEOUT_SECONDS: float = 20.0

    # Outbound webhook (optional)
    WEBHOOK_URL: str = ""
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    # Attachments
    ATTACHMENTS_DIR: str = "/tmp/support-inbox-attachments"
    MAX_ATTACHMENT_BYTES: int = 25 * 1024 * 1024  # 25 MB

    # Real-time events
    SSE_KEEPALIVE_SECONDS: float = 30.0
    SSE_QUEUE_SIZE: int = 256

    # Scheduled delivery worker
    SCHEDULED_WORKER_ENABLED: bool = True  # Run inside the API process
    SCHEDULED_POLL_INTERVAL_SECONDS: float = 600.0
    SCHEDULED_SEND_DELAY_SECONDS: float = 1.0

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.WEBHOOK_URL.strip())

    @property
    def tracking_base_url(self) -> str:
        """Base URL for tracking pixels (no trailing slash)."""
        return self.SERVER_URL.rstrip("/")


settings = Settings()
