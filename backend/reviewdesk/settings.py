from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "reviewdesk"
    cors_origins: list[str] = Field(default=["*"], validation_alias=AliasChoices("CORS_ORIGINS", "REVIEWDESK_CORS_ORIGINS"))
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "REVIEWDESK_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/reviewdesk",
        validation_alias=AliasChoices("DATABASE_URL", "REVIEWDESK_DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "REVIEWDESK_REDIS_URL"))
    celery_enabled: bool = Field(default=True, validation_alias=AliasChoices("CELERY_ENABLED", "REVIEWDESK_CELERY_ENABLED"))

    # Bearer keys for machine-to-machine triggers
    review_sync_api_key: str | None = Field(default=None, validation_alias=AliasChoices("REVIEW_SYNC_API_KEY", "REVIEWDESK_REVIEW_SYNC_API_KEY"))
    cron_secret: str | None = Field(default=None, validation_alias=AliasChoices("CRON_SECRET", "REVIEWDESK_CRON_SECRET"))

    # Google Business Profile
    google_client_id: str | None = Field(default=None, validation_alias=AliasChoices("GOOGLE_CLIENT_ID", "REVIEWDESK_GOOGLE_CLIENT_ID"))
    google_client_secret: str | None = Field(default=None, validation_alias=AliasChoices("GOOGLE_CLIENT_SECRET", "REVIEWDESK_GOOGLE_CLIENT_SECRET"))
    google_refresh_token: str | None = Field(default=None, validation_alias=AliasChoices("GOOGLE_REFRESH_TOKEN", "REVIEWDESK_GOOGLE_REFRESH_TOKEN"))

    # AI reply drafts
    anthropic_api_key: str | None = Field(default=None, validation_alias=AliasChoices("ANTHROPIC_API_KEY", "REVIEWDESK_ANTHROPIC_API_KEY"))
    anthropic_model: str = Field(default="claude-haiku-4-5-20251001", validation_alias=AliasChoices("ANTHROPIC_MODEL", "REVIEWDESK_ANTHROPIC_MODEL"))
    ai_stub_replies: bool = Field(default=False, validation_alias=AliasChoices("AI_STUB_REPLIES", "REVIEWDESK_AI_STUB_REPLIES"))

    # Outbound email
    resend_api_key: str | None = Field(default=None, validation_alias=AliasChoices("RESEND_API_KEY", "REVIEWDESK_RESEND_API_KEY"))
    email_from: str = Field(default="Reviews <alerts@reviewdesk.local>", validation_alias=AliasChoices("EMAIL_FROM", "REVIEWDESK_EMAIL_FROM"))

    # Sync sizing
    sync_batch_size: int = Field(default=20, validation_alias=AliasChoices("SYNC_BATCH_SIZE", "REVIEWDESK_SYNC_BATCH_SIZE"))
    sync_page_size: int = Field(default=50, validation_alias=AliasChoices("SYNC_PAGE_SIZE", "REVIEWDESK_SYNC_PAGE_SIZE"))
    webhook_page_size: int = Field(default=10, validation_alias=AliasChoices("WEBHOOK_PAGE_SIZE", "REVIEWDESK_WEBHOOK_PAGE_SIZE"))
    backfill_default_limit: int = Field(default=5, validation_alias=AliasChoices("BACKFILL_DEFAULT_LIMIT", "REVIEWDESK_BACKFILL_DEFAULT_LIMIT"))
    backfill_max_pages: int = Field(default=500, validation_alias=AliasChoices("BACKFILL_MAX_PAGES", "REVIEWDESK_BACKFILL_MAX_PAGES"))

    # Autopilot
    autopilot_max_drafts_per_run: int = Field(default=10, validation_alias=AliasChoices("AUTOPILOT_MAX_DRAFTS_PER_RUN", "REVIEWDESK_AUTOPILOT_MAX_DRAFTS_PER_RUN"))
    draft_sweep_max_reviews: int = Field(default=50, validation_alias=AliasChoices("DRAFT_SWEEP_MAX_REVIEWS", "REVIEWDESK_DRAFT_SWEEP_MAX_REVIEWS"))
    draft_sweep_lookback_days: int = Field(default=7, validation_alias=AliasChoices("DRAFT_SWEEP_LOOKBACK_DAYS", "REVIEWDESK_DRAFT_SWEEP_LOOKBACK_DAYS"))

    # Reply retry queue
    reply_queue_batch_size: int = Field(default=20, validation_alias=AliasChoices("REPLY_QUEUE_BATCH_SIZE", "REVIEWDESK_REPLY_QUEUE_BATCH_SIZE"))
    reply_queue_max_attempts: int = Field(default=5, validation_alias=AliasChoices("REPLY_QUEUE_MAX_ATTEMPTS", "REVIEWDESK_REPLY_QUEUE_MAX_ATTEMPTS"))
    reply_queue_backoff_base_minutes: int = Field(default=5, validation_alias=AliasChoices("REPLY_QUEUE_BACKOFF_BASE_MINUTES", "REVIEWDESK_REPLY_QUEUE_BACKOFF_BASE_MINUTES"))
    reply_queue_backoff_max_minutes: int = Field(default=240, validation_alias=AliasChoices("REPLY_QUEUE_BACKOFF_MAX_MINUTES", "REVIEWDESK_REPLY_QUEUE_BACKOFF_MAX_MINUTES"))

    # In-process scheduler
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "REVIEWDESK_SCHEDULER_ENABLED"))
    sync_interval_minutes: int = Field(default=30, validation_alias=AliasChoices("SYNC_INTERVAL_MINUTES", "REVIEWDESK_SYNC_INTERVAL_MINUTES"))
    reply_queue_interval_minutes: int = Field(default=5, validation_alias=AliasChoices("REPLY_QUEUE_INTERVAL_MINUTES", "REVIEWDESK_REPLY_QUEUE_INTERVAL_MINUTES"))
    draft_sweep_interval_minutes: int = Field(default=30, validation_alias=AliasChoices("DRAFT_SWEEP_INTERVAL_MINUTES", "REVIEWDESK_DRAFT_SWEEP_INTERVAL_MINUTES"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
