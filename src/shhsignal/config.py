# src/shhsignal/config.py
"""
Configuration module for shhsignal.

``SignalConfig`` holds the validated client settings. ``Config`` loads them
from a YAML file and environment overrides.
"""

import logging
import os
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .robustness import ErrorType, SignalError
from .timers import TIMEOUT_DISABLED

logger = logging.getLogger(__name__)

DEFAULT_CONNECTION_TIMEOUT = 1000 * 1000


class SignalConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    connection_timeout: int = Field(DEFAULT_CONNECTION_TIMEOUT, alias="connectionTimeout")
    room_password: str = Field("", alias="roomPassword")
    stale_session_ttl: float = Field(300.0, alias="staleSessionTtl", ge=0)
    max_finalized_sessions: int = Field(4096, alias="maxFinalizedSessions", ge=0)
    log_level: str = Field("INFO", alias="logLevel")
    log_file: Optional[str] = Field(None, alias="logFile")

    @field_validator("connection_timeout")
    @classmethod
    def _check_timeout(cls, value: int) -> int:
        if value != TIMEOUT_DISABLED and value <= 0:
            raise ValueError("connection_timeout must be positive, or -1 to disable")
        return value


_FIELD_NAMES = {field.alias: name for name, field in SignalConfig.model_fields.items() if field.alias}


def _by_field_name(values: dict[str, Any]) -> dict[str, Any]:
    return {_FIELD_NAMES.get(key, key): value for key, value in values.items()}


def resolve_settings(config: Any = None, **options) -> SignalConfig:
    """Build a ``SignalConfig`` from a model, a mapping or a ``Config``, plus keyword overrides."""
    if isinstance(config, Config):
        config = config.settings()
    if isinstance(config, SignalConfig):
        data = config.model_dump()
    else:
        data = _by_field_name(dict(config or {}))
    data.update(_by_field_name(options))
    try:
        return SignalConfig.model_validate(data)
    except ValidationError as e:
        raise SignalError(f"Invalid configuration: {e}", ErrorType.CONFIG) from e


class Config:
    """Configuration manager for shhsignal."""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or self._find_config_file()
        self.data: dict[str, Any] = {}
        self.load()

    def _find_config_file(self) -> str:
        """Find configuration file in standard locations."""
        candidates = [
            "shhsignal.yaml",
            "shhsignal.yml",
            os.path.expanduser("~/.shhsignal/config.yaml"),
            "/etc/shhsignal/config.yaml",
        ]
        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate
        return "shhsignal.yaml"

    def load(self):
        """Load configuration from file and environment."""
        if os.path.isfile(self.config_file):
            try:
                with open(self.config_file) as f:
                    file_config = yaml.safe_load(f) or {}
                self.data.update(file_config)
                logger.info(f"Loaded config from {self.config_file}")
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config from {self.config_file}: {e}")

        self._load_from_env()
        self.validate()

    def _load_from_env(self):
        env_mappings = {
            "SHHSIGNAL_CONNECTION_TIMEOUT": ("signal", "connection_timeout"),
            "SHHSIGNAL_ROOM_PASSWORD": ("signal", "room_password"),
            "SHHSIGNAL_LOG_LEVEL": ("logging", "level"),
            "SHHSIGNAL_LOG_FILE": ("logging", "file"),
        }

        for env_var, config_path in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                self.set_nested(*config_path, value=value)
                logger.debug(f"Set {'.'.join(config_path)} from {env_var}")

    def set_nested(self, *keys, value):
        """Set a nested configuration value."""
        d = self.data
        for key in keys[:-1]:
            if not isinstance(d.get(key), dict):
                d[key] = {}
            d = d[key]
        d[keys[-1]] = value

    def get(self, *keys, default=None):
        """Get a nested configuration value."""
        d = self.data
        for key in keys:
            if isinstance(d, dict) and key in d:
                d = d[key]
            else:
                return default
        return d

    def settings(self) -> SignalConfig:
        """Flatten the ``signal`` and ``logging`` sections into a ``SignalConfig``."""
        data = dict(self.get("signal", default={}) or {})
        if self.get("logging", "level") is not None:
            data["log_level"] = self.get("logging", "level")
        if self.get("logging", "file") is not None:
            data["log_file"] = self.get("logging", "file")
        try:
            return SignalConfig.model_validate(data)
        except ValidationError as e:
            raise SignalError(f"Invalid configuration: {e}", ErrorType.CONFIG, {"file": self.config_file}) from e

    def validate(self):
        """Validate configuration against the settings model."""
        try:
            self.settings()
        except SignalError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise
        logger.debug("Configuration validated successfully")

    def save(self):
        """Save configuration to file."""
        directory = os.path.dirname(self.config_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.config_file, "w") as f:
            yaml.safe_dump(self.data, f, default_flow_style=False)
        logger.info(f"Saved config to {self.config_file}")
