from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SavePolicy(str, Enum):
    """When a session is written back after a request."""
    always = "always"        # on every completion
    if_dirty = "if_dirty"    # on completion, only when an attribute changed
    never = "never"          # only on invalidation
    on_change = "on_change"  # immediately on every attribute mutation


class RefreshPolicy(str, Enum):
    """When a session is re-read from the store on first access."""
    always = "always"
    never = "never"
    stale = "stale"          # when older than STALE_PERIOD seconds


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SESSIONS_", env_file=".env", extra="ignore")

    # Service
    SERVICE_NAME: str = "session-service"
    PORT: int = 8040
    LOG_LEVEL: str = "INFO"

    # MongoDB
    MONGO_URI: str = Field(default="mongodb://localhost:27017")
    MONGO_DB: str = Field(default="HttpSessions")
    COLLECTION: str = Field(default="sessions")

    # Context (one application sharing the collection)
    CONTEXT_PATH: str = Field(default="/")
    VIRTUAL_HOSTS: List[str] = Field(default_factory=list)
    WORKER_NAME: Optional[str] = Field(default=None)
    COOKIE_NAME: str = Field(default="SESSIONID")

    # Session behaviour
    SAVE_POLICY: SavePolicy = SavePolicy.if_dirty
    SAVE_ALL_ATTRIBUTES: bool = False
    REFRESH_POLICY: RefreshPolicy = RefreshPolicy.stale
    STALE_PERIOD: float = 0.0
    MAX_INACTIVE_INTERVAL: float = 1800.0
    IDLE_PERIOD: float = 0.0
    INVALIDATE_ON_STOP: bool = False
    PRESERVE_ON_STOP: bool = True

    # Scavenger (seconds)
    SCAVENGE_DELAY: float = 30 * 60
    SCAVENGE_PERIOD: float = 10 * 60

    # Purger (seconds)
    PURGE_ENABLED: bool = False
    PURGE_DELAY: float = 60 * 60
    PURGE_PERIOD: float = 0.0
    MINIMAL_PURGE_AGE: float = 24 * 60 * 60


settings = Settings()
