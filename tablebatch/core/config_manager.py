"""
Settings for the table client, the local emulator and logging.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from enum import Enum

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

logger = logging.getLogger(__name__)

_SEMVER = re.compile(r"\d+\.\d+\.\d+")

# Environment variable -> (section, key) targets and value converter
ENV_OVERRIDES: List[Tuple[str, List[Tuple[str, str]], Callable[[str], Any]]] = [
    ("TABLEBATCH_ENDPOINT", [("service", "endpoint")], str),
    ("TABLEBATCH_ACCOUNT", [("service", "account_name"), ("emulator", "account_name")], str),
    ("TABLEBATCH_TIMEOUT", [("service", "timeout")], float),
    ("TABLEBATCH_HOST", [("emulator", "host")], str),
    ("TABLEBATCH_PORT", [("emulator", "port")], int),
    ("TABLEBATCH_LOG_LEVEL", [("logging", "level")], str.upper),
    ("TABLEBATCH_LOG_FILE", [("logging", "file")], str),
]


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    format: str = "json"
    file: Optional[str] = None
    rotation_size: str = "10MB"
    rotation_count: int = 5
    module_levels: Optional[Dict[str, str]] = Field(
        default=None,
        description="Per-module log levels, e.g., {'tablebatch.table.service': 'DEBUG'}"
    )


class TableServiceConfig(BaseModel):
    """Table service client configuration."""
    endpoint: str = Field(
        default="http://127.0.0.1:7071/table/devstoreaccount1",
        description="Base URL of the table service account"
    )
    account_name: str = "devstoreaccount1"
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Round-trip timeout for one batch request in seconds"
    )
    api_version: str = "2019-02-02"

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Require an absolute http(s) URL without a trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Endpoint must be an http:// or https:// URL")
        return v.rstrip("/")


class EmulatorConfig(BaseModel):
    """Local emulator server configuration."""
    host: str = "127.0.0.1"
    port: int = 7071
    account_name: str = "devstoreaccount1"


class TableBatchConfig(BaseModel):
    """Main tablebatch configuration schema."""

    version: str = Field(default="0.1.0", description="Configuration version")

    service: TableServiceConfig = Field(default_factory=TableServiceConfig)

    emulator: EmulatorConfig = Field(default_factory=EmulatorConfig)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not _SEMVER.fullmatch(v):
            raise ValueError("Version must be in format x.y.z")
        return v

    model_config = ConfigDict(use_enum_values=True)


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; nested sections merge key by key."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def read_config_file(file_path: str) -> Dict[str, Any]:
    """Read a YAML (.yaml/.yml) or JSON (.json) settings document."""
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    loader = _FILE_LOADERS.get(path.suffix.lower())
    if loader is None:
        raise ValueError(f"Unsupported config file format: {path.suffix}")

    text = path.read_text(encoding="utf-8")
    return loader(text) or {}


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect settings from TABLEBATCH_* environment variables."""
    environ = os.environ if environ is None else environ
    found: Dict[str, Any] = {}

    for name, targets, convert in ENV_OVERRIDES:
        raw = environ.get(name)
        if not raw:
            continue
        try:
            value = convert(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {name}: {raw!r}") from e
        for section, key in targets:
            found.setdefault(section, {})[key] = value

    return found


_FILE_LOADERS: Dict[str, Callable[[str], Any]] = {
    ".yaml": yaml.safe_load,
    ".yml": yaml.safe_load,
    ".json": json.loads,
}


class ConfigManager:
    """
    Builds the active TableBatchConfig.

    Later sources win: defaults, then the settings file, then TABLEBATCH_*
    environment variables, then command line overrides. ``reload()`` repeats
    the last ``load()`` with the environment read afresh.
    """

    def __init__(self):
        self._config: Optional[TableBatchConfig] = None
        self._config_file: Optional[str] = None
        self._cli_overrides: Dict[str, Any] = {}

    def load(
        self,
        config_file: Optional[str] = None,
        cli_overrides: Optional[Dict[str, Any]] = None
    ) -> TableBatchConfig:
        """
        Assemble and validate the configuration.

        Raises:
            FileNotFoundError: ``config_file`` does not exist
            ValueError: Unsupported file type or malformed environment value
            ValidationError: The merged settings are invalid
        """
        self._config_file = config_file
        self._cli_overrides = dict(cli_overrides or {})

        layers = []
        if config_file:
            layers.append((f"file {config_file}", read_config_file(config_file)))
        layers.append(("environment", env_overrides()))
        layers.append(("command line", self._cli_overrides))

        settings: Dict[str, Any] = {}
        for source, layer in layers:
            if layer:
                logger.debug(f"Applying settings from {source}: {sorted(layer)}")
                settings = deep_merge(settings, layer)

        try:
            config = TableBatchConfig(**settings)
        except ValidationError as e:
            logger.error(f"Invalid tablebatch configuration: {e}")
            raise

        self._config = config
        logger.debug(
            "Active configuration: %s", json.dumps(config.model_dump(mode="json"), sort_keys=True)
        )
        return config

    def get_config(self) -> TableBatchConfig:
        """Return the configuration from the last successful ``load()``."""
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config

    def reload(self) -> TableBatchConfig:
        return self.load(config_file=self._config_file, cli_overrides=self._cli_overrides)
