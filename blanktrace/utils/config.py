"""
Configuration management for BlankTrace.
Loads and validates settings from a YAML file and environment variables.
"""

import os
import re
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from blanktrace.utils.errors import ConfigurationError

ENV_PREFIX = "BLANKTRACE_"
DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_ACCEPT_LANGUAGES = ["en-US,en;q=0.9", "en-GB,en;q=0.8"]


class RotationMode(str, Enum):
    """How often fingerprint header values change."""

    EVERY_REQUEST = "every_request"
    INTERVAL = "interval"
    LAUNCH = "launch"

    @classmethod
    def parse(cls, value: "str | RotationMode") -> "RotationMode":
        """Parse a rotation mode, accepting EveryRequest / every-request / every_request.

        Raises:
            ValueError: If the value names no known mode.
        """
        if isinstance(value, cls):
            return value
        key = re.sub(r"[\s_-]", "", str(value)).lower()
        for mode in cls:
            if mode.value.replace("_", "") == key:
                return mode
        raise ValueError(
            f"unknown rotation mode {value!r} (expected one of: "
            f"{', '.join(m.value for m in cls)})"
        )


class FingerprintConfig(BaseModel):
    """Fingerprint rotation configuration."""

    model_config = ConfigDict(extra="forbid")

    rotation_mode: RotationMode = RotationMode.EVERY_REQUEST
    rotation_interval: int = Field(default=3600, ge=0)  # seconds, interval mode only
    randomize_user_agent: bool = True
    randomize_accept_language: bool = True
    strip_referer: bool = False
    accept_languages: list[str] = Field(default_factory=lambda: list(DEFAULT_ACCEPT_LANGUAGES))

    @field_validator("rotation_mode", mode="before")
    @classmethod
    def _parse_mode(cls, value: Any) -> RotationMode:
        return RotationMode.parse(value)

    @model_validator(mode="after")
    def _check_interval(self) -> "FingerprintConfig":
        if self.rotation_mode is RotationMode.INTERVAL and self.rotation_interval <= 0:
            raise ValueError("rotation_interval must be positive in interval mode")
        return self


class CookiesConfig(BaseModel):
    """Cookie policy configuration."""

    model_config = ConfigDict(extra="forbid")

    block_all: bool = False
    log_attempts: bool = False
    allow_list: list[str] = Field(default_factory=list)  # domain suffixes, override block_all
    block_list: list[str] = Field(default_factory=list)  # domain suffixes


class BlockingConfig(BaseModel):
    """Domain blocking configuration."""

    model_config = ConfigDict(extra="forbid")

    auto_block: bool = False
    auto_block_threshold: int = Field(default=10, ge=1)
    block_patterns: list[str] = Field(default_factory=list)

    @field_validator("block_patterns")
    @classmethod
    def _compile_patterns(cls, patterns: list[str]) -> list[str]:
        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid block pattern {pattern!r}: {e}") from e
        return patterns


class CleanupConfig(BaseModel):
    """Retention cleanup configuration."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    retention_days: int = Field(default=7, ge=0)
    interval_seconds: int = Field(default=3600, gt=0)


class PipelineConfig(BaseModel):
    """Event pipeline configuration."""

    model_config = ConfigDict(extra="forbid")

    queue_size: int = Field(default=1024, ge=1)
    overflow: Literal["drop", "block"] = "drop"
    block_timeout: float = Field(default=0.05, gt=0)  # seconds, block mode only


class GeneralConfig(BaseModel):
    """General configuration."""

    model_config = ConfigDict(extra="forbid")

    log_level: str = "INFO"
    log_file: str | None = None
    json_logs: bool = True


class Settings(BaseModel):
    """Main settings container."""

    model_config = ConfigDict(extra="forbid")

    fingerprint: FingerprintConfig = Field(default_factory=FingerprintConfig)
    cookies: CookiesConfig = Field(default_factory=CookiesConfig)
    blocking: BlockingConfig = Field(default_factory=BlockingConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    db_path: str


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides.

    Environment variables should be prefixed with BLANKTRACE_ and use
    double underscores for nested keys.

    Example:
        BLANKTRACE_CLEANUP__RETENTION_DAYS=3

    Args:
        config: Configuration dictionary.

    Returns:
        Configuration with environment overrides.
    """
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == f"{ENV_PREFIX}CONFIG":
            continue

        key_path = key[len(ENV_PREFIX) :].lower().split("__")

        current = config
        for part in key_path[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        final_key = key_path[-1]
        try:
            if value.lower() in ("true", "false"):
                current[final_key] = value.lower() == "true"
            elif "." in value:
                current[final_key] = float(value)
            else:
                current[final_key] = int(value)
        except ValueError:
            current[final_key] = value

    return config


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Malformed configuration file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {path}")
    return data


def build_settings(data: dict[str, Any]) -> Settings:
    """Validate a raw configuration mapping.

    Raises:
        ConfigurationError: If any value is missing or malformed.
    """
    try:
        return Settings(**data)
    except ValidationError as e:
        errors = [
            {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        raise ConfigurationError("Invalid configuration", details={"errors": errors}) from e


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from YAML with environment overrides.

    Settings are loaded from:
    1. Default values
    2. The YAML file (argument, BLANKTRACE_CONFIG, or ./config.yaml)
    3. Environment variables (highest priority)

    Raises:
        ConfigurationError: On a missing file, bad YAML or invalid values.
    """
    if path is None:
        path = os.environ.get(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_PATH)

    config = _read_yaml(Path(path))
    config = _apply_env_overrides(config)
    return build_settings(config)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get process-wide settings (loaded once)."""
    return load_settings()
