"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at startup (fail-fast). Paths are made absolute
once here so every consumer sees the same vault roots and managed
install root.

Usage:
    from config.settings import get_settings

    settings = get_settings()
    print(settings.vaults.public_vault)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


_DEFAULT_CORS_ORIGINS = [
    "http://localhost:1420",
    "http://127.0.0.1:1420",
    "tauri://localhost",
]


# =============================================================================
# Nested Settings Groups
# =============================================================================


class ServerSettings(BaseSettings):
    """HTTP listener and runtime mode configuration."""

    model_config = {"env_prefix": "GATEKEEPER_", "extra": "ignore"}

    host: str = "127.0.0.1"
    port: int = 3001
    mode: str = "LOCAL"
    shutdown_timeout: int = 5

    @field_validator("mode")
    @classmethod
    def _validate_mode(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in ("LOCAL", "CLOUD"):
            raise ValueError("GATEKEEPER_MODE must be LOCAL or CLOUD")
        return v


class VaultSettings(BaseSettings):
    """Filesystem roots for the public and private vaults."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    public_vault: str = "./data/public"
    private_vault: str = "./data/private"

    @field_validator("public_vault", "private_vault")
    @classmethod
    def _absolute(cls, v: str) -> str:
        return os.path.abspath(os.path.expanduser(v))


class ToolchainSettings(BaseSettings):
    """Managed uv + SkyPilot toolchain configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    carapace_home: Optional[str] = None  # Falls back to ~/.carapace
    sky_package: str = "skypilot-nightly[aws]"
    uv_release_url: str = "https://github.com/astral-sh/uv/releases/latest/download"
    sky_auto_install: bool = True

    @property
    def home(self) -> Path:
        """Absolute managed install root."""
        if self.carapace_home:
            return Path(os.path.expanduser(self.carapace_home)).resolve()
        return Path.home() / ".carapace"


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # CORS (comma-separated)
    cors_origins: str = ""

    # Nested groups (initialized separately to support env_prefix)
    server: ServerSettings = None  # type: ignore[assignment]
    vaults: VaultSettings = None  # type: ignore[assignment]
    toolchain: ToolchainSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("server") is None:
            values["server"] = ServerSettings()
        if values.get("vaults") is None:
            values["vaults"] = VaultSettings()
        if values.get("toolchain") is None:
            values["toolchain"] = ToolchainSettings()
        return values

    @property
    def allowed_origins(self) -> List[str]:
        """CORS origins from CORS_ORIGINS, or the desktop-shell defaults."""
        if self.cors_origins:
            return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return list(_DEFAULT_CORS_ORIGINS)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
