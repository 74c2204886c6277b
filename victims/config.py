"""Configuration settings for the victims database service.

All settings are loaded from environment variables (or a ``.env`` file) using
pydantic-settings. The ``get_settings()`` function returns a cached singleton
instance.

Environment variables are case-insensitive and extra variables are silently
ignored.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class UpdateMode(str, Enum):
    """Whether the local database may be synchronized."""
    AUTO = "auto"
    OFFLINE = "offline"


class MatchMode(str, Enum):
    """How a fuzzy match compares the hit count against the threshold."""
    EXACT = "exact"  # count == threshold
    MINIMUM = "minimum"  # count >= threshold


class DuplicatePolicy(str, Enum):
    """How synchronized updates treat records already stored locally."""
    APPEND = "append"
    REPLACE = "replace"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        victims_url: Base URL of the remote victims service.
        database_url: SQLAlchemy async URL of the local victims database.
        database_echo: Echo SQL statements to the log.
        updates: ``auto`` to allow synchronization, ``offline`` to forbid it.
        tolerance: Default fraction of candidate hashes that must match for a
            fuzzy fingerprint match.
        fuzzy_match_mode: ``exact`` keeps the hit count equal to the
            threshold, ``minimum`` accepts any count at or above it.
        duplicate_policy: ``append`` inserts every update as a new advisory,
            ``replace`` swaps out advisories with the same coordinates.
        sync_timeout_seconds: HTTP timeout for each feed request.
        api_host: Bind address for the API server.
        api_port: Bind port for the API server.
        api_log_level: Logging level (debug, info, warning, error, critical).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote
    victims_url: str = "https://victims-websec.rhcloud.com/service/v1"
    updates: UpdateMode = UpdateMode.AUTO
    sync_timeout_seconds: int = 30

    # Database
    database_url: str = "sqlite+aiosqlite:///.victims.db"
    database_echo: bool = False

    # Matching
    tolerance: float = Field(default=0.75, ge=0.0, le=1.0)
    fuzzy_match_mode: MatchMode = MatchMode.EXACT
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.APPEND

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_log_level: str = "info"

    @field_validator("victims_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"victims_url must be an http(s) URL, got {value!r}")
        return value.rstrip("/")

    @property
    def offline(self) -> bool:
        """True when synchronization has been disabled."""
        return self.updates == UpdateMode.OFFLINE


@lru_cache
def get_settings() -> Settings:
    """Get or create the cached application settings singleton.

    Returns:
        Cached Settings instance.
    """
    return Settings()
