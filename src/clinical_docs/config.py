from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class Settings:
    """Centralized application settings.

    This keeps environment-variable handling in one place so other modules can
    depend on strongly-typed attributes instead of calling os.getenv
    directly.
    """

    # Age (in minutes) after which an advisory edit lock may be taken over by
    # any other clinician. Measured from the last acquire, not the last edit.
    lock_stale_after_minutes: int = int(os.getenv("LOCK_STALE_AFTER_MINUTES", "30"))

    # Pagination defaults for patient listings and search.
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Window used by the statistics query to count "recent" documents.
    recent_window_days: int = int(os.getenv("RECENT_WINDOW_DAYS", "7"))

    # Optional database configuration for SQL-backed repositories.
    database_url: Optional[str] = os.getenv("DATABASE_URL")
    use_sql_repos: bool = os.getenv("USE_SQL_REPOS", "false").lower() == "true"

    # How many times the SQL store re-reads and retries a conditional write
    # that lost a compare-and-set race before reporting a conflict.
    store_max_write_attempts: int = int(os.getenv("STORE_MAX_WRITE_ATTEMPTS", "3"))

    # Optional API-key gate in front of the HTTP adapter. Disabled by default
    # so local development and tests run without credentials.
    enable_api_auth: bool = os.getenv("ENABLE_API_AUTH", "false").lower() == "true"
    # Comma-separated list of accepted keys when ENABLE_API_AUTH is true.
    api_keys: Optional[str] = os.getenv("API_KEYS")

    # Comma-separated list of allowed CORS origins for the HTTP adapter.
    cors_allow_origins: str = os.getenv("CORS_ALLOW_ORIGINS", "*")


settings = Settings()
