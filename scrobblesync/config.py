from typing import Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Last.fm refuses larger pages for user.getRecentTracks
MAX_PAGE_SIZE = 200


class SyncConfig(BaseModel):
    """Tunables handed to the store and engine."""
    db_path: str = "./data/cache.db"
    timezone: str = "UTC"
    backfill_days: int = Field(default=30, ge=1)
    retention_days: int = Field(default=90, ge=1)
    gap_max_days: int = Field(default=7, ge=0)
    page_size: int = Field(default=MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    max_pages: int = Field(default=50, ge=1)
    request_delay_seconds: float = Field(default=0.25, ge=0)


class Settings(BaseSettings):
    # Last.fm
    LASTFM_API_KEY: str = ""
    LASTFM_USERNAME: str = ""
    LASTFM_BASE_URL: str = "https://ws.audioscrobbler.com/2.0/"

    # Persistence
    CACHE_DB_PATH: str = "./data/cache.db"
    TIMEZONE: str = "UTC"

    # Sync Logic
    BACKFILL_DAYS: int = 30
    RETENTION_DAYS: int = 90
    GAP_MAX_DAYS: int = 7
    PAGE_SIZE: int = MAX_PAGE_SIZE
    MAX_PAGES: int = 50
    REQUEST_DELAY_SECONDS: float = 0.25
    SYNC_INTERVAL_SECONDS: int = 300
    MAINTENANCE_INTERVAL_SECONDS: int = 86400  # 24h

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 15

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    def sync_config(self) -> SyncConfig:
        return SyncConfig(
            db_path=self.CACHE_DB_PATH,
            timezone=self.TIMEZONE,
            backfill_days=self.BACKFILL_DAYS,
            retention_days=self.RETENTION_DAYS,
            gap_max_days=self.GAP_MAX_DAYS,
            page_size=min(self.PAGE_SIZE, MAX_PAGE_SIZE),
            max_pages=self.MAX_PAGES,
            request_delay_seconds=self.REQUEST_DELAY_SECONDS,
        )


settings = Settings()
