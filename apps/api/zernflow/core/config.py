"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.04.00"

    # Database
    DATABASE_URL: str

    # Cron tick endpoints (/internal/scheduled/*)
    CRON_SECRET: str = ""

    # Token Encryption (workspace provider keys, AI keys)
    FERNET_KEY: str = ""  # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

    # Messaging provider (Late inbox API)
    LATE_API_BASE_URL: str = "https://getlate.dev/api/v1"
    LATE_API_TIMEOUT_SECONDS: float = 30.0

    # AI provider (OpenAI-compatible chat completions)
    AI_API_BASE_URL: str = "https://api.openai.com/v1"
    AI_DEFAULT_MODEL: str = "gpt-4o-mini"
    AI_TIMEOUT_SECONDS: float = 30.0
    AI_INTENT_TIMEOUT_SECONDS: float = 5.0

    # Inbound webhook
    WEBHOOK_MAX_PAYLOAD_BYTES: int = 1_000_000  # 1MB limit

    # Job store
    JOBS_BATCH_SIZE: int = 20
    JOB_MAX_ATTEMPTS: int = 3
    JOB_BACKOFF_BASE_SECONDS: int = 5
    JOB_STALE_AFTER_MINUTES: int = 15

    # Sequences
    SEQUENCE_BATCH_SIZE: int = 50

    # Broadcasts
    BROADCAST_BATCH_SIZE: int = 5
    BROADCAST_SPACING_MS: int = 100
    BROADCAST_RECIPIENT_INSERT_BATCH: int = 500
    BROADCAST_JOB_INSERT_BATCH: int = 100
    SEGMENT_MAX_CONTACTS: int = 10_000

    # Outbound webhooks
    OUTBOUND_WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    OUTBOUND_WEBHOOK_MAX_FAILURES: int = 10

    # Flow engine
    FLOW_MAX_STEPS: int = 50

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    RATE_LIMIT_WEBHOOK: int = 300  # Provider webhooks
    RATE_LIMIT_API: int = 60  # General API

    # Worker
    WORKER_POLL_INTERVAL: int = 10

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


settings = Settings()
