"""Configuration using pydantic-settings."""

import os
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml
from loguru import logger
from pydantic import ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from .exceptions import ConfigurationError, DashboardConfigError, DashboardNotFoundError
from .models import DashboardSpec

CONFIG_ENV_VAR = "GF_FETCH_CONFIG"
CONFIG_FILE_NAME = "grafana-fetch.yaml"


def config_path() -> Path:
    """Locate the YAML config file.

    Uses ``GF_FETCH_CONFIG`` when set, otherwise ``~/grafana-fetch.yaml``.

    Raises:
        ConfigurationError: If the home directory cannot be resolved.
    """
    configured = os.getenv(CONFIG_ENV_VAR)
    if configured:
        return Path(configured)

    try:
        home = Path.home()
    except RuntimeError as e:
        raise ConfigurationError(f"could not resolve home directory: {e}") from e
    return home / CONFIG_FILE_NAME


class Settings(BaseSettings):
    """Immutable configuration snapshot for the gateway."""

    model_config = SettingsConfigDict(
        env_prefix="GF_FETCH_",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    listen: str = ":8080"
    url: str = "http://grafana:3000"
    cache: str | None = None

    # Global defaults for dashboards that leave a value unset
    ttl: int = 0
    org: int | None = None
    theme: str | None = None
    token: str | None = None

    # TLS policy for upstream requests
    insecure: bool = False
    cafile: str | None = None

    log_level: str = "INFO"
    log_file: str | None = None
    log_json: bool = False

    # Raw per-dashboard entries, validated lazily on lookup
    dashboards: dict[str, Any] = {}

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        """Require an absolute http(s) base URL."""
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"upstream url must be an absolute http(s) URL, got {value!r}")
        return value

    @field_validator("listen")
    @classmethod
    def validate_listen(cls, value: str) -> str:
        """Require a ``[host]:port`` listen address."""
        _, sep, port = value.rpartition(":")
        if not sep or (port and not (port.isdigit() and int(port) <= 65535)):
            raise ValueError(f"listen address must be [host]:port, got {value!r}")
        return value

    @field_validator("dashboards")
    @classmethod
    def normalize_dashboard_names(cls, value: dict[str, Any]) -> dict[str, Any]:
        """Dashboard names are matched case-insensitively."""
        return {str(name).lower(): entry for name, entry in value.items()}

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=config_path()),
            file_secret_settings,
        )

    @property
    def listen_host(self) -> str:
        host, _, _ = self.listen.rpartition(":")
        return host.strip("[]") or "0.0.0.0"  # nosec B104 - Required for container deployment

    @property
    def listen_port(self) -> int:
        _, _, port = self.listen.rpartition(":")
        return int(port) if port else 8080

    def has_dashboard(self, name: str) -> bool:
        """Check whether a dashboard with this name is configured, ignoring case."""
        return name.lower() in self.dashboards

    def dashboard(self, name: str) -> DashboardSpec:
        """Materialize the spec for a configured dashboard.

        Raises:
            DashboardNotFoundError: If the dashboard is not configured.
            DashboardConfigError: If its entry does not validate.
        """
        if not self.has_dashboard(name):
            raise DashboardNotFoundError(f"dashboard {name!r} not found")

        try:
            return DashboardSpec.model_validate(self.dashboards[name.lower()])
        except ValidationError as e:
            raise DashboardConfigError(f"invalid config for dashboard {name!r}: {e}") from e


def load_settings(**overrides: Any) -> Settings:
    """Build a settings snapshot from overrides, environment and config file.

    Args:
        overrides: Values taking precedence over every other source (CLI flags).
            ``None`` values are ignored.
    """
    path = config_path()
    if not path.is_file():
        logger.warning("no config file loaded", config=str(path))

    return Settings(**{key: value for key, value in overrides.items() if value is not None})


class SettingsProvider:
    """Holds the current settings snapshot.

    Requests read ``current`` once and keep that snapshot; ``reload`` swaps
    the reference and never mutates a snapshot in place.
    """

    def __init__(self, settings: Settings, overrides: dict[str, Any] | None = None) -> None:
        self._settings = settings
        self._overrides = overrides or {}

    @property
    def current(self) -> Settings:
        return self._settings

    def swap(self, settings: Settings) -> None:
        """Make ``settings`` the snapshot seen by new requests."""
        self._settings = settings

    def reload(self) -> Settings:
        """Reload settings, keeping the previous snapshot if loading fails."""
        try:
            settings = load_settings(**self._overrides)
        except (ValidationError, ConfigurationError, OSError, ValueError, yaml.YAMLError) as e:
            logger.error("config reload failed, keeping previous settings", error=str(e))
            return self._settings

        self.swap(settings)
        logger.info("config reloaded", dashboards=len(settings.dashboards))
        return settings
