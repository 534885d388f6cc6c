"""
SkillSwap Configuration

Environment-based configuration for the SkillSwap sync client.
"""
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _app_version_from_package() -> str:
    """Read version from the installed distribution metadata."""
    try:
        from importlib.metadata import PackageNotFoundError, version
        return version("skillswap-sync")
    except PackageNotFoundError:
        pass
    # Fallback: parse pyproject.toml directly (dev / non-installed mode)
    from pathlib import Path
    import re
    pyproject = Path(__file__).resolve().parent.parent / "pyproject.toml"
    if pyproject.exists():
        match = re.search(r'^version\s*=\s*"([^"]+)"', pyproject.read_text(), re.MULTILINE)
        if match:
            return match.group(1)
    return "0.0.0-unknown"


# Tables the client reads and subscribes to.  Kept here so every screen
# service refers to the same names.
RESOURCE_OPPORTUNITIES = "opportunities"
RESOURCE_COMPLETIONS = "completions"
RESOURCE_ACTIVITIES = "activities"
RESOURCE_NOTIFICATIONS = "notifications"
RESOURCE_APPLICATIONS = "applications"
RESOURCE_PROFILES = "profiles"
RESOURCE_CONNECTIONS = "connections"
RESOURCE_CHAT_ROOMS = "chat_rooms"
RESOURCE_CHAT_PARTICIPANTS = "chat_participants"
RESOURCE_MESSAGES = "messages"
RESOURCE_REVIEWS = "reviews"


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    app_name: str = "SkillSwap"
    app_version: str = _app_version_from_package()
    debug: bool = False
    log_level: str = "INFO"

    # Hosted store (PostgREST-compatible)
    # e.g. https://abcd1234.supabase.co
    store_url: str = "http://localhost:54321"
    store_anon_key: Optional[str] = None  # sent as the ``apikey`` header
    # Realtime change feed; derived from store_url when unset
    realtime_url: Optional[str] = None
    request_timeout: float = 15.0  # seconds

    # Resilient fetch: fixed delay, not exponential
    fetch_max_attempts: int = 3
    fetch_retry_delay: float = 1.0  # seconds

    # Change feed reconnect after a dropped stream
    feed_reconnect_delay: float = 2.0  # seconds

    # User search box
    search_debounce: float = 0.3  # seconds of quiet before querying
    search_min_chars: int = 2
    search_result_limit: int = 5

    # Home screen activity feed keeps only the latest N entries
    activity_feed_limit: int = 10

    @model_validator(mode="after")
    def _derive_realtime_url(self) -> "Settings":
        if not self.realtime_url:
            self.realtime_url = self.store_url.rstrip("/") + "/realtime/v1"
        if self.fetch_max_attempts < 1:
            raise ValueError("fetch_max_attempts must be at least 1")
        return self

    @property
    def rest_url(self) -> str:
        """Base URL of the PostgREST endpoint."""
        return self.store_url.rstrip("/") + "/rest/v1"

    model_config = SettingsConfigDict(
        env_prefix="SKILLSWAP_",
        env_file=".env",
        env_file_encoding="utf-8",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience access
settings = get_settings()
