"""
Configuration module for SPF Watch.

Loads settings from environment variables with sensible defaults.
"""

import os


class Config:
    """Base configuration shared by all environments."""

    # Security
    SECRET_KEY: str = os.environ.get("SECRET_KEY", "dev-secret-change-me")

    # Database
    SQLALCHEMY_DATABASE_URI: str = os.environ.get(
        "DATABASE_URL",
        "sqlite:///spfwatch.db",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS: bool = False

    # Writers wait on a locked SQLite file instead of failing immediately.
    SQLALCHEMY_ENGINE_OPTIONS: dict = {
        "connect_args": {"timeout": 30},
    }

    # Upload / payload limits
    MAX_CONTENT_LENGTH: int = 1 * 1024 * 1024  # 1 MB

    # ------------------------------------------------------------------
    # SPF core defaults (DnsSettings row overrides the resolver values)
    # ------------------------------------------------------------------
    SPF_DNS_TIMEOUT: float = float(os.environ.get("SPF_DNS_TIMEOUT", "5.0"))
    SPF_MAX_INCLUDE_DEPTH: int = int(os.environ.get("SPF_MAX_INCLUDE_DEPTH", "10"))
    SPF_CHECK_CONCURRENCY: int = int(os.environ.get("SPF_CHECK_CONCURRENCY", "5"))
    SPF_ESP_CACHE_TTL: int = int(os.environ.get("SPF_ESP_CACHE_TTL", "3600"))
    SPF_CHECK_RATE_LIMIT_SECONDS: int = int(
        os.environ.get("SPF_CHECK_RATE_LIMIT_SECONDS", "60")
    )
    # A scheduled run claimed longer ago than this is presumed dead.
    SPF_RUN_STALE_SECONDS: int = int(os.environ.get("SPF_RUN_STALE_SECONDS", "21600"))

    # Application-level defaults
    ITEMS_PER_PAGE: int = 25
