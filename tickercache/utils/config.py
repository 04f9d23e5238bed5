"""
Configuration management for tickercache.

Loads settings from environment variables with sensible defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


@dataclass
class StoreConfig:
    """Key-value store configuration."""

    data_dir: Path = field(default_factory=lambda: Path.home() / "tickercache-data")
    db_name: str = "tickercache.duckdb"
    db_path_override: Path | None = None

    @property
    def db_path(self) -> Path:
        if self.db_path_override is not None:
            return self.db_path_override
        return self.data_dir / self.db_name

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"


@dataclass
class APIConfig:
    """Upstream provider (EODHD) configuration."""

    eodhd_api_token: str | None = None
    eodhd_base_url: str = "https://eodhd.com/api"
    # Per-call timeouts stay short so one stuck symbol cannot eat the budget
    request_timeout: float = 8.0
    symbol_list_timeout: float = 30.0
    rate_limit_calls: int = 1000
    rate_limit_period: float = 60.0


@dataclass
class BatchConfig:
    """Default batch ingestion configuration."""

    chunk_size: int = 5
    wall_clock_budget: float = 240.0
    chunk_delay: float = 1.0
    max_workers: int = 4
    chunk_retries: int = 0
    job_ttl_hours: int = 24


@dataclass
class Config:
    """Main configuration class."""

    store: StoreConfig = field(default_factory=StoreConfig)
    api: APIConfig = field(default_factory=APIConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)

    # General settings
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        data_dir = os.getenv("TICKERCACHE_DATA_DIR")
        db_path = os.getenv("TICKERCACHE_DB_PATH")

        return cls(
            store=StoreConfig(
                data_dir=Path(data_dir).expanduser() if data_dir else Path.home() / "tickercache-data",
                db_path_override=Path(db_path).expanduser() if db_path else None,
            ),
            api=APIConfig(
                eodhd_api_token=os.getenv("EODHD_API_TOKEN"),
                eodhd_base_url=os.getenv("EODHD_BASE_URL", "https://eodhd.com/api"),
                request_timeout=float(os.getenv("EODHD_TIMEOUT", "8")),
                rate_limit_calls=int(os.getenv("EODHD_RATE_LIMIT_CALLS", "1000")),
            ),
            batch=BatchConfig(
                chunk_size=int(os.getenv("TICKERCACHE_CHUNK_SIZE", "5")),
                wall_clock_budget=float(os.getenv("TICKERCACHE_BUDGET_SECONDS", "240")),
                max_workers=int(os.getenv("TICKERCACHE_MAX_WORKERS", "4")),
                chunk_retries=int(os.getenv("TICKERCACHE_CHUNK_RETRIES", "0")),
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _config
    _config = None
