"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncConfiguration


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Application Configuration
    app_name: str = Field(default="feedsync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".feedsync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        validate_default=True,
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Feed fetching
    request_timeout_seconds: int = Field(
        default=30,
        ge=5,
        le=300,
        description="HTTP timeout for a single feed request"
    )
    fetch_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts made on transport errors before giving up"
    )
    user_agent: str = Field(
        default="feedsync/1.0 (+ics)",
        description="User-Agent header sent to feed hosts"
    )

    # Concurrency
    sync_lock_ttl_seconds: int = Field(
        default=300,
        ge=10,
        description="Lease length of the per-calendar sync lock"
    )

    # HTTP server
    cors_allow_origins: List[str] = Field(
        default=["*"],
        description="Origins allowed by the CORS middleware"
    )

    # Sync Configuration
    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Synchronization settings"
    )

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url')
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/feedsync.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# feedsync configuration
# Copy this file to .env and adjust as needed

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Storage Configuration (optional)
# DATA_DIR=~/.feedsync
# DATABASE_URL=sqlite:///~/.feedsync/feedsync.db

# Feed fetching
REQUEST_TIMEOUT_SECONDS=30
FETCH_RETRY_ATTEMPTS=3

# Per-calendar sync lock lease
SYNC_LOCK_TTL_SECONDS=300

# Sync Configuration
SYNC_CONFIG__TARGET_TIMEZONE=Europe/Copenhagen
SYNC_CONFIG__GRACE_HOURS=6
SYNC_CONFIG__MAX_MISS_COUNT=3
SYNC_CONFIG__FUZZY_THRESHOLD=0.65
SYNC_CONFIG__TITLE_OVERLAP_FLOOR=0.6
SYNC_CONFIG__TIME_TOLERANCE_SECONDS=300
SYNC_CONFIG__FUZZY_MODE=strict
SYNC_CONFIG__RESPECT_CANCELLATION=true

# Manual category protection: preserve_always or time_windowed
SYNC_CONFIG__MANUAL_OVERRIDE_POLICY=preserve_always
SYNC_CONFIG__MANUAL_OVERRIDE_WINDOW_MINUTES=60

# Fallback category
SYNC_CONFIG__UNKNOWN_CATEGORY_NAME=Ukendt
SYNC_CONFIG__DEFAULT_SYNC_INTERVAL_MINUTES=60
'''

    with open(path, 'w') as f:
        f.write(example_content)
