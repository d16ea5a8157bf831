"""Configuration management."""
import os
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings."""

    # Cache storage
    database_url: str = Field(
        default="sqlite:///./follower_sync.db",
        description="SQLAlchemy database URL for the local cache"
    )
    cache_namespace: str = Field(default="default")

    # Relationship data source
    source_base_url: str = Field(
        default="",
        description="Base URL of the relationship API (empty = mock data)"
    )
    source_api_key: str = Field(default="")
    mock_seed: int = Field(default=42)

    # Notification feed
    max_new_follower_notifications: int = Field(default=5)
    max_unfollow_notifications: int = Field(default=3)
    unfollow_offset_hours: int = Field(default=2)
    notification_cache_limit: int = Field(default=200)
    follower_milestones: list[int] = Field(default_factory=lambda: [100, 500])
    detect_lost_followers: bool = Field(default=True)

    # Trends
    trend_bucket_count: int = Field(default=7)

    # Cache expiry (hours)
    followers_cache_expiry_hours: int = Field(default=24)
    notifications_cache_expiry_hours: int = Field(default=48)

    # Config versioning
    config_version: str = Field(default="1.0.0")

    class Config:
        env_prefix = "FOLLOWER_SYNC_"
        env_file = ".env"


def get_settings() -> Settings:
    """Get settings - an explicit API key in the environment wins over .env."""
    env_key = os.environ.get("FOLLOWER_SYNC_SOURCE_API_KEY", "")

    if env_key:
        return Settings(source_api_key=env_key)

    return Settings()


settings = get_settings()
