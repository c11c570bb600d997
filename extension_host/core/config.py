"""
Centralized configuration for the extension host

Provides pydantic-settings based configuration with:
- Environment variable loading (.env support)
- Type validation
- Default values

All settings can be overridden via environment variables with the EXTHOST_
prefix, for example EXTHOST_LOCK_POLL_INTERVAL_MS=25.

Usage:
    from extension_host.core.config import get_config

    config = get_config()
    print(config.cache_file_name)
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExtensionHostConfig(BaseSettings):
    """Central configuration for the extension host"""

    model_config = SettingsConfigDict(
        env_prefix="EXTHOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ============================================
    # Layout
    # ============================================

    extensions_dir_name: str = Field(
        default=".extensions",
        description="Folder (under the host root) that receives installed packages"
    )

    cache_file_name: str = Field(
        default="extensions.deps.json",
        description="Dependency cache file name inside the extensions directory"
    )

    # ============================================
    # Concurrency
    # ============================================

    lock_poll_interval_ms: int = Field(
        default=10,
        ge=1,
        description="Delay between attempts to take the cache lock"
    )

    # ============================================
    # Registry access
    # ============================================

    http_timeout: int = Field(default=60, description="Registry request timeout in seconds")
    http_max_retries: int = Field(default=3, description="Registry request retry attempts")
    max_download_size: int = Field(
        default=50 * 1024 * 1024,
        description="Largest package archive accepted, in bytes"
    )

    # ============================================
    # Logging
    # ============================================

    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {', '.join(valid_levels)}")
        return v_upper


_config: Optional[ExtensionHostConfig] = None


def get_config(force_reload: bool = False) -> ExtensionHostConfig:
    """
    Get the global configuration instance

    Args:
        force_reload: Force reload configuration from environment

    Returns:
        ExtensionHostConfig instance
    """
    global _config

    if _config is None or force_reload:
        _config = ExtensionHostConfig()

    return _config
