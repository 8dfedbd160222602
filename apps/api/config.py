"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    APP_URL: str = "http://localhost:3000"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Facebook / Instagram (Instagram business accounts are reached via the Facebook app)
    FACEBOOK_APP_ID: str = ""
    FACEBOOK_APP_SECRET: str = ""
    FACEBOOK_SCOPES: str = (
        "ads_management,ads_read,business_management,pages_read_engagement,pages_manage_ads,"
        "pages_manage_posts,pages_show_list,read_insights,instagram_basic,instagram_content_publish"
    )
    INSTAGRAM_SCOPES: str = (
        "ads_management,ads_read,business_management,pages_read_engagement,pages_manage_ads,"
        "pages_manage_posts,pages_show_list,read_insights,instagram_basic,instagram_content_publish"
    )

    # Twitter / X
    TWITTER_CLIENT_ID: str = ""
    TWITTER_CLIENT_SECRET: str = ""
    TWITTER_SCOPES: str = "tweet.read tweet.write users.read media.write offline.access"

    # Amazon
    AMAZON_CLIENT_ID: str = ""
    AMAZON_CLIENT_SECRET: str = ""
    AMAZON_SCOPES: str = (
        "profile advertising::campaign_management advertising::campaign_read advertising::reports"
    )

    # Provider calls
    OAUTH_HTTP_TIMEOUT_SECONDS: float = 15.0
    OAUTH_USER_AGENT: str = "AdInsights-App/1.0"
    FACEBOOK_TOKEN_MAX_ATTEMPTS: int = 3
    FACEBOOK_RETRY_BASE_SECONDS: float = 2.0

    # Rate limiting of initiate/callback
    OAUTH_RATE_LIMIT_REQUESTS: int = 30
    OAUTH_RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Connection policy
    PREMIUM_GATED_PLATFORMS: List[str] = ["amazon"]
    FREEMIUM_MAX_CONNECTIONS: int = 1

    # Session
    SESSION_SECRET: str = "change_me_in_production"
    SESSION_ALGORITHM: str = "HS256"
    SESSION_COOKIE_NAME: str = "session"
    SESSION_DURATION_DAYS: int = 7
    SESSION_COOKIE_SECURE: bool = False
    SESSION_STORE_BACKEND: str = "redis"  # "redis" or "memory"
    SESSION_KEY_PREFIX: str = "adinsights:session"
    ENCRYPTION_KEY: str = "change_me_32_byte_key_for_prod"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def missing_provider_credentials() -> List[str]:
    """Return the names of provider credential settings that are still empty."""
    required = (
        "FACEBOOK_APP_ID",
        "FACEBOOK_APP_SECRET",
        "TWITTER_CLIENT_ID",
        "TWITTER_CLIENT_SECRET",
        "AMAZON_CLIENT_ID",
        "AMAZON_CLIENT_SECRET",
    )
    return [name for name in required if not (getattr(settings, name) or "").strip()]


def validate_security_settings() -> None:
    """Fail fast when insecure default secrets are still configured."""
    insecure_values = {
        "",
        "change_me_in_production",
        "change_me_32_byte_key_for_prod",
        "your_session_secret_change_in_production",
        "your_32_byte_encryption_key_here",
    }
    session_secret = (settings.SESSION_SECRET or "").strip()
    encryption_key = (settings.ENCRYPTION_KEY or "").strip()

    if session_secret in insecure_values or len(session_secret) < 24:
        raise ValueError("SESSION_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")
    if encryption_key in insecure_values or len(encryption_key) < 32:
        raise ValueError("ENCRYPTION_KEY is insecure. Configure a strong non-default key (>=32 chars).")
