"""Application configuration using pydantic-settings."""

from pathlib import Path
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via:
    1. Environment variables (e.g., DATA_DIR=/my/path)
    2. .env file in the project root

    The store path is derived from DATA_DIR by default but can be overridden.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # API settings
    api_title: str = "Metahub Branch Service"
    api_version: str = "0.1.0"
    debug: bool = True  # Default to True for development

    # Authentication (bootstrap key for user registration)
    admin_api_key: str | None = None

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Storage paths
    data_dir: Path = Path("./data")

    # Shared relational store: metadata tables + one schema per branch
    store_path: Path | None = None

    # DuckDB settings
    duckdb_threads: int = 4
    duckdb_memory_limit: str = "4GB"

    # Branching
    default_branch_codename: str = "main"
    default_locale: str = "en"

    # Advisory lock rows older than this are treated as abandoned (seconds)
    lock_stale_after_seconds: int = 300

    # Active/default branch resolution cache TTL (seconds, 0 = no expiry)
    resolution_cache_ttl_seconds: float = 60.0

    # Listing
    list_default_limit: int = 100
    list_max_limit: int = 1000

    @model_validator(mode="after")
    def set_default_paths(self) -> "Settings":
        """Set default paths based on data_dir if not explicitly provided."""
        if self.store_path is None:
            self.store_path = self.data_dir / "metahubs.duckdb"
        return self


# Global settings instance
settings = Settings()
