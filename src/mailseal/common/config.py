"""
Application configuration management for mailseal.

This module provides configuration loading from environment variables
and configuration files, with type-safe settings classes.
"""

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import tomllib

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import InvalidConfigError, MissingConfigError

HKP_URL_PATTERN = re.compile(
    r"^(http|https)://"
    r"(([a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9\-]*[a-zA-Z0-9])\.)*"
    r"([A-Za-z0-9]|[A-Za-z0-9][A-Za-z0-9\-]*[A-Za-z0-9])"
    r"(:\d{2,5})?$"
)


class GeneralSettings(BaseSettings):
    """General compose behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="MAILSEAL_GENERAL_",
        extra="ignore",
    )

    auto_add_primary: bool = Field(
        default=False,
        description="Always encrypt to the sender's own key as well",
    )
    auto_sign_msg: bool = Field(
        default=False, description="Sign outgoing messages by default"
    )


class SecuritySettings(BaseSettings):
    """Passphrase handling settings."""

    model_config = SettingsConfigDict(
        env_prefix="MAILSEAL_SECURITY_",
        extra="ignore",
    )

    password_cache: bool = Field(
        default=True, description="Cache unlocked passphrases in memory"
    )
    password_timeout: int = Field(
        default=30, ge=1, le=1440, description="Passphrase cache TTL in minutes"
    )


class KeyServerSettings(BaseSettings):
    """Remote key directory settings."""

    model_config = SettingsConfigDict(
        env_prefix="MAILSEAL_KEYSERVER_",
        extra="ignore",
    )

    hkp_base_url: str = Field(
        default="https://keys.openpgp.org", description="HKP key server base URL"
    )
    hkp_server_list: list[str] = Field(
        default=[
            "https://keys.openpgp.org",
            "https://keyserver.ubuntu.com",
        ],
        description="Known HKP key servers",
    )
    hkp_lookup: bool = Field(
        default=True, description="Look up missing recipient keys remotely"
    )
    timeout: int = Field(default=10, ge=1, description="Lookup timeout in seconds")

    @field_validator("hkp_base_url")
    @classmethod
    def validate_hkp_base_url(cls, v: str) -> str:
        """Validate the HKP base URL."""
        v = v.rstrip("/")
        if not HKP_URL_PATTERN.match(v):
            raise ValueError("HKP URL must look like http(s)://host[:port]")
        return v

    @field_validator("hkp_server_list", mode="before")
    @classmethod
    def parse_server_list(cls, v: Any) -> list[str]:
        """Parse server list from comma-separated string or list."""
        if isinstance(v, str):
            if not v.strip():
                return []
            return [server.strip() for server in v.split(",")]
        return v


class CryptoSettings(BaseSettings):
    """GnuPG backend settings."""

    model_config = SettingsConfigDict(
        env_prefix="MAILSEAL_CRYPTO_",
        extra="ignore",
    )

    gnupg_home: Optional[str] = Field(None, description="GnuPG home directory")
    gpg_binary: str = Field(default="gpg", description="Path to the gpg binary")
    use_agent: bool = Field(default=False, description="Use gpg-agent")
    default_key: Optional[str] = Field(
        None, description="Fingerprint of the default signing key"
    )


class ComposeSettings(BaseSettings):
    """Compose session settings."""

    model_config = SettingsConfigDict(
        env_prefix="MAILSEAL_COMPOSE_",
        extra="ignore",
    )

    large_message_threshold: int = Field(
        default=400000,
        description="Armored size above which a progress indicator is shown",
    )
    attachment_concurrency: int = Field(
        default=4, ge=1, le=64, description="Parallel attachment encryptions"
    )
    default_domain: str = Field(
        default="localhost", description="Domain used for Message-ID generation"
    )


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="MAILSEAL_LOG_",
        extra="ignore",
    )

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    file: Optional[str] = Field(None, description="Log file path")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper


class Settings(BaseSettings):
    """Main application settings aggregating all configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MAILSEAL_",
        extra="ignore",
    )

    app_name: str = Field(default="mailseal", description="Application name")
    debug: bool = Field(default=False, description="Debug mode")

    general: GeneralSettings = Field(default_factory=GeneralSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    keyserver: KeyServerSettings = Field(default_factory=KeyServerSettings)
    crypto: CryptoSettings = Field(default_factory=CryptoSettings)
    compose: ComposeSettings = Field(default_factory=ComposeSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_toml(cls, path: str | Path) -> "Settings":
        """
        Load settings from a TOML configuration file.

        Args:
            path: Path to the TOML configuration file.

        Returns:
            Settings instance with loaded configuration.

        Raises:
            MissingConfigError: If the file does not exist.
            InvalidConfigError: If the file cannot be parsed.
        """
        path = Path(path)
        if not path.exists():
            raise MissingConfigError(str(path))

        try:
            with open(path, "rb") as f:
                config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise InvalidConfigError(
                config_key="config_file",
                value=str(path),
                reason=f"Failed to parse TOML: {e}",
            )

        return cls._from_dict(config_data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Settings":
        """Create settings from a dictionary of TOML sections."""
        sections = {
            "general": GeneralSettings,
            "security": SecuritySettings,
            "keyserver": KeyServerSettings,
            "crypto": CryptoSettings,
            "compose": ComposeSettings,
            "logging": LoggingSettings,
        }
        settings_kwargs: dict[str, Any] = {}

        if "app" in data:
            settings_kwargs.update(data["app"])

        for name, settings_cls in sections.items():
            if name in data:
                try:
                    settings_kwargs[name] = settings_cls(**data[name])
                except ValueError as e:
                    raise InvalidConfigError(
                        config_key=name,
                        value=data[name],
                        reason=str(e),
                    )

        return cls(**settings_kwargs)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings come from ``MAILSEAL_CONFIG_FILE`` when it points to an
    existing TOML file, otherwise from the environment.

    Returns:
        Settings instance.

    Raises:
        InvalidConfigError: If a configured value does not validate.
    """
    config_file = os.getenv("MAILSEAL_CONFIG_FILE")

    try:
        if config_file and Path(config_file).exists():
            return Settings.from_toml(config_file)
        return Settings()
    except ValidationError as e:
        raise InvalidConfigError(
            config_key="environment",
            value=config_file or "",
            reason=str(e),
        ) from e


def reload_settings() -> Settings:
    """
    Reload settings, clearing the cache.

    Returns:
        Fresh Settings instance.
    """
    get_settings.cache_clear()
    return get_settings()
