"""Identity provider configuration."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from IDP_* environment variables."""

    # Environment
    environment: str = "development"  # development, staging, production

    # Callback state storage: "memory" (single instance) or "redis" (distributed)
    state_backend: str = "memory"
    redis_url: str | None = None  # e.g., redis://localhost:6379/0
    state_ttl_seconds: int = 300  # Login attempts expire after 5 minutes

    # Upstream calls
    http_timeout_seconds: float = 10.0  # Per request to token/user-info endpoints
    exchange_timeout_seconds: float = 30.0  # Whole callback exchange

    # Provider configuration file (JSON) and poll interval for changes
    providers_file: str | None = None
    config_poll_interval: float = 5.0

    # URLs
    backend_url: str = "http://localhost:8000"

    # Cookie binding a login attempt to the browser session
    session_cookie_name: str = "idp_session"
    cookie_secure: bool = False  # Set True in production with HTTPS

    # Rate limit for login and callback endpoints
    login_rate_limit: str = "10/minute"

    model_config = SettingsConfigDict(env_prefix="IDP_", env_file=".env", case_sensitive=False)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
