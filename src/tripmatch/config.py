"""
Runtime configuration.

Values come from the environment (prefix TRIPMATCH_) or a .env file.
Build a Settings() where the process starts and pass it down; components
never read configuration on their own.
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TRIPMATCH_", env_file=".env", extra="ignore")

    # Pre-filter
    PREFILTER_URL: Optional[str] = None  # None: use the in-memory index
    PREFILTER_LIMIT: int = 50
    PREFILTER_TIMEOUT: float = 5.0
    PREFILTER_RETRIES: int = 3
    PREFILTER_BACKOFF: float = 0.5  # seconds, doubled per attempt

    # Compute
    AWAIT_TIMEOUT: float = 60.0
    MIN_TOTAL_SCORE: int = 0  # matches scoring below this are not recorded

    # Routing
    # Off by default: waypoints only leave the process for a self-hosted router
    ROUTING_ENABLED: bool = False
    OSRM_URL: Optional[str] = None
    ROUTING_TIMEOUT: float = 10.0

    # API server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
