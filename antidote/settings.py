import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Backend API
    api_base_url: str = Field(default="http://localhost:5000", alias="API_BASE_URL")
    request_timeout: float = Field(default=30.0, alias="REQUEST_TIMEOUT")

    # Response cache
    enable_offline_cache: bool = Field(default=True, alias="ENABLE_OFFLINE_CACHE")
    cache_expiration_minutes: int = Field(default=60, alias="CACHE_EXPIRATION_MINUTES")

    # Retry
    enable_retry_logic: bool = Field(default=True, alias="ENABLE_RETRY_LOGIC")
    max_request_attempts: int = Field(default=3, alias="MAX_REQUEST_ATTEMPTS")
    retry_base_delay: float = Field(default=1.0, alias="RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=30.0, alias="RETRY_MAX_DELAY")
    retry_jitter: float = Field(default=0.5, alias="RETRY_JITTER")

    # Local persistence (cache and tokens)
    database_url: str = Field(
        default="sqlite+aiosqlite:///./antidote.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Supabase / Spotify token refresh
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_anon_key: str = Field(default="", alias="SUPABASE_ANON_KEY")
    spotify_refresh_url: str | None = Field(default=None, alias="SPOTIFY_REFRESH_URL")
    token_store_secret: str = Field(default="", alias="TOKEN_STORE_SECRET")
    token_expiry_margin_seconds: int = Field(
        default=300, alias="TOKEN_EXPIRY_MARGIN_SECONDS"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    debug: bool = Field(default=False, alias="DEBUG")

    @property
    def refresh_endpoint(self) -> str | None:
        """URL of the Spotify token refresh function, if one is configured."""
        if self.spotify_refresh_url:
            return self.spotify_refresh_url
        if self.supabase_url:
            return f"{self.supabase_url.rstrip('/')}/functions/v1/refresh-spotify-token"
        return None


def load_settings() -> Settings:
    """Build settings from the process environment (after .env is loaded)."""
    return Settings.model_validate(dict(os.environ))


global_settings = load_settings()
