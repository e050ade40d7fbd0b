from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Runtime
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres (Supabase) connection
    DATABASE_URL: str | None = None

    # Shared secrets for the externally-invoked endpoints
    SYNC_RUNNER_SECRET: str | None = None
    CRON_SECRET: str | None = None

    # Google OAuth client (Calendar + Sheets)
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None
    GOOGLE_CALENDAR_WEBHOOK_URL: str | None = None

    # Fernet key for OAuth tokens at rest
    ENCRYPTION_KEY: str | None = None

    # =================================================================
    # SYNC ENGINE SETTINGS
    # =================================================================
    TOKEN_REFRESH_SKEW_SECONDS: int = 120
    WATCH_TTL_SECONDS: int = 6 * 24 * 60 * 60  # 6 days, Google may cap shorter
    WATCH_RENEWAL_THRESHOLD_HOURS: int = 12
    DISPATCH_DEFAULT_LIMIT: int = 10
    DISPATCH_MAX_LIMIT: int = 50
    PROVIDER_REQUEST_TIMEOUT: float = 30.0
    INVOICING_BASE_URL: str = "https://api.greeninvoice.co.il/api/v1"
    INVOICING_CURRENCY: str = "ILS"
    INVOICING_LANGUAGE: str = "he"

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 8
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def google_oauth_configured(self) -> bool:
        """Refresh is only possible with both halves of the OAuth client."""
        return bool(self.GOOGLE_CLIENT_ID and self.GOOGLE_CLIENT_SECRET)

    def clamp_dispatch_limit(self, limit: int | None) -> int:
        """Clamp a requested batch size into [1, DISPATCH_MAX_LIMIT]; None means the default."""
        if limit is None:
            limit = self.DISPATCH_DEFAULT_LIMIT
        return min(max(int(limit), 1), self.DISPATCH_MAX_LIMIT)

    def get_db_pool_config(self) -> dict:
        """Keyword arguments for AsyncConnectionPool, shrunk for local development."""
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # Batches run sequentially, a small pool is plenty locally
            config.update({"min_size": 1, "max_size": 4, "timeout": 15.0})

        return config


settings = Settings()
