"""
AlpacaDeck Configuration

Typed configuration for the device core, loaded from YAML with
environment variable overrides. Every section has working defaults, so
``load_config()`` with no file present returns a usable configuration.

Search order (first existing file wins):
    ./alpacadeck.yaml
    ~/.alpacadeck/config.yaml
    /etc/alpacadeck/config.yaml

Environment overrides use ``ALPACADECK_<FIELD>`` for top-level fields and
``ALPACADECK_<SECTION>__<KEY>`` for section fields (for example
``ALPACADECK_ALPACA__RETRIES=0``). They take precedence over file values.

Usage:
    from alpacadeck.config import load_config

    config = load_config()
    print(config.exposure.max_wait_time)
"""

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Type

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    SettingsError,
)

from alpacadeck.exceptions import ConfigurationError
from alpacadeck.types import DeviceType

ENV_PREFIX = "ALPACADECK_"
ENV_NESTED_DELIMITER = "__"


# =============================================================================
# Section Models
# =============================================================================

class AlpacaConfig(BaseModel):
    """HTTP transport settings for Alpaca servers."""

    request_timeout: float = Field(default=10.0, gt=0.0, le=120.0)
    retries: int = Field(default=2, ge=0, le=10)
    retry_delay: float = Field(default=1.0, ge=0.0, le=30.0)


class PollingConfig(BaseModel):
    """Property poller settings.

    ``intervals`` overrides the per-device-type default poll interval
    (seconds), e.g. ``{"rotator": 0.2, "observingconditions": 60}``.
    """

    intervals: Dict[str, float] = Field(default_factory=dict)
    min_interval: float = Field(default=0.1, gt=0.0)
    use_device_state: bool = True
    stale_after_failures: int = Field(default=3, ge=0)

    @field_validator("intervals")
    @classmethod
    def validate_intervals(cls, value: Dict[str, float]) -> Dict[str, float]:
        known = {t.value for t in DeviceType}
        normalized = {}
        for device_type, interval in value.items():
            key = device_type.lower()
            if key not in known:
                raise ValueError(f"Unknown device type in intervals: {device_type}")
            if interval <= 0:
                raise ValueError(f"Poll interval for {device_type} must be positive")
            normalized[key] = float(interval)
        return normalized


class ExposureConfig(BaseModel):
    """Camera exposure tracker settings."""

    poll_interval: float = Field(default=0.5, gt=0.0, le=10.0)
    max_wait_time: float = Field(default=300.0, gt=0.0)


class DiscoveryConfig(BaseModel):
    """Alpaca UDP discovery settings."""

    timeout: float = Field(default=2.0, gt=0.0, le=30.0)
    num_queries: int = Field(default=2, ge=1, le=10)
    auto_add: bool = False


class AlpacaDeckConfig(BaseSettings):
    """Root configuration object.

    Keyword arguments (the YAML file contents) rank below environment
    variables, so an override always wins over the file.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter=ENV_NESTED_DELIMITER,
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_file: Optional[str] = None
    alpaca: AlpacaConfig = Field(default_factory=AlpacaConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    exposure: ExposureConfig = Field(default_factory=ExposureConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, init_settings


# =============================================================================
# Loading
# =============================================================================

def get_config_paths() -> List[Path]:
    """Return candidate configuration file locations in priority order."""
    return [
        Path("./alpacadeck.yaml"),
        Path.home() / ".alpacadeck" / "config.yaml",
        Path("/etc/alpacadeck/config.yaml"),
    ]


def _error_key(error: ValidationError) -> Optional[str]:
    """Dotted location of the first failing field, e.g. ``alpaca.retries``."""
    for item in error.errors():
        loc = [str(part) for part in item.get("loc", ()) if isinstance(part, str)]
        if loc:
            return ".".join(loc)
    return None


def load_config(path: Optional[str | Path] = None) -> AlpacaDeckConfig:
    """Load configuration from YAML and the environment.

    Args:
        path: Explicit configuration file. When omitted the default search
              paths are tried and defaults are used if none exists.

    Returns:
        Validated AlpacaDeckConfig

    Raises:
        ConfigurationError: File not found, invalid YAML, or validation failed
    """
    data: Dict[str, Any] = {}
    config_file: Optional[Path] = None

    if path is not None:
        config_file = Path(path)
        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_file}",
                config_file=str(config_file),
            )
    else:
        for candidate in get_config_paths():
            if candidate.exists():
                config_file = candidate
                break

    if config_file is not None:
        try:
            with open(config_file) as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {e}",
                config_file=str(config_file),
            ) from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(
                "Invalid YAML in configuration file: top level must be a mapping",
                config_file=str(config_file),
            )
        # A bare ``section:`` line loads as None and means "use defaults"
        data = {key: value for key, value in (loaded or {}).items() if value is not None}

    try:
        return AlpacaDeckConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Configuration validation failed: {e}",
            config_key=_error_key(e),
            config_file=str(config_file) if config_file else None,
        ) from e
    except SettingsError as e:
        raise ConfigurationError(
            f"Invalid value in environment: {e}",
            config_file=str(config_file) if config_file else None,
        ) from e
