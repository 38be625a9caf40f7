"""Configuration and logging setup for mediaweave."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Use tomllib for Python 3.11+, tomli for 3.10
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


# Default config file location
CONFIG_FILE_PATH = Path.home() / ".config" / "mediaweave" / "config.toml"

RETRY_PROFILES = ("default", "aggressive", "conservative")

DEFAULT_PROVIDERS = ["anilist", "jikan", "kitsu", "tmdb"]

_SECRET_FIELDS = ("tmdb_api_key",)


def _load_config_file(config_path: Path | None = None) -> dict[str, Any]:
    """Load configuration from TOML file if it exists.

    Args:
        config_path: Path to config file. Defaults to ~/.config/mediaweave/config.toml

    Returns:
        Dictionary of configuration values, empty dict if file doesn't exist
    """
    path = config_path or CONFIG_FILE_PATH
    if not path.exists():
        return {}

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        # Config file is optional
        logging.getLogger(__name__).warning(
            "Failed to load config file %s: %s", path, type(e).__name__
        )
        return {}


class Settings(BaseSettings):
    """mediaweave settings.

    Settings are loaded in priority order:
    1. Environment variables (highest priority)
    2. .env file
    3. ~/.config/mediaweave/config.toml (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="MEDIAWEAVE_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Provider credentials - NEVER log these
    tmdb_api_key: SecretStr | None = None

    # Providers
    enabled_providers: list[str] = list(DEFAULT_PROVIDERS)
    priority_overrides: dict[str, list[str]] = {}
    min_confidence_threshold: float = 0.8

    # Network resilience
    retry_profile: str = "default"
    call_timeout: float = 10.0  # seconds, per provider call attempt
    rate_limit_cooldown: float = 60.0  # seconds when no Retry-After is sent

    # Cross-reference cache
    cache_db_path: Path = Path("~/.cache/mediaweave/xref.db")
    cache_ttl_days: int = 7
    cache_max_size_bytes: int = 10 * 1024 * 1024

    # Logging
    log_level: str = "INFO"

    @model_validator(mode="before")
    @classmethod
    def load_from_config_file(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Load values from config file for any fields not set via env vars."""
        config_data = _load_config_file()

        if not config_data:
            return values

        for key in cls.model_fields:
            # Env vars take precedence over the config file
            if key not in values or values[key] is None:
                if key in config_data:
                    values[key] = config_data[key]

        return values

    @field_validator("retry_profile")
    @classmethod
    def validate_retry_profile(cls, v: str) -> str:
        """Validate retry profile name."""
        profile = v.lower().strip()
        if profile not in RETRY_PROFILES:
            msg = f"Unknown retry profile '{v}'. Must be one of {', '.join(RETRY_PROFILES)}."
            raise ValueError(msg)
        return profile

    @field_validator("min_confidence_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Validate the confidence threshold lies in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            msg = f"min_confidence_threshold must be between 0.0 and 1.0, got {v}"
            raise ValueError(msg)
        return v

    @field_validator("enabled_providers")
    @classmethod
    def normalize_providers(cls, v: list[str]) -> list[str]:
        """Lowercase provider ids and drop duplicates, keeping order."""
        seen: list[str] = []
        for provider in v:
            provider_id = provider.lower().strip()
            if provider_id and provider_id not in seen:
                seen.append(provider_id)
        return seen

    def has_tmdb_credentials(self) -> bool:
        """Check if a TMDB API key is configured."""
        return bool(self.tmdb_api_key)

    def is_provider_enabled(self, provider_id: str) -> bool:
        """Check whether a provider takes part in aggregation."""
        return provider_id.lower() in self.enabled_providers

    def __repr__(self) -> str:
        """Safe repr that masks credential values."""
        fields = []
        for name in type(self).model_fields:
            value = getattr(self, name)
            if name in _SECRET_FIELDS:
                if value is not None:
                    fields.append(f"{name}=SecretStr('**********')")
                else:
                    fields.append(f"{name}=None")
            else:
                fields.append(f"{name}={value!r}")
        return f"Settings({', '.join(fields)})"

    def __str__(self) -> str:
        """Safe str representation that masks credential values."""
        return self.__repr__()


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset the singleton Settings instance.

    Primarily used for testing to ensure fresh settings are loaded.
    """
    global _settings
    _settings = None


def configure_logging(level: str = "INFO") -> None:
    """Configure stdlib logging for mediaweave."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Suppress httpx debug logs (too verbose)
    logging.getLogger("httpx").setLevel(logging.WARNING)


__all__ = [
    "Settings",
    "get_settings",
    "reset_settings",
    "configure_logging",
    "CONFIG_FILE_PATH",
    "DEFAULT_PROVIDERS",
    "RETRY_PROFILES",
]
