"""Configuration parsing for the huebeacon CLI.

Brief:
  This module centralizes the startup configuration:
    - splitting the required ``host:service`` bridge argument
    - reading the optional YAML config file
    - validating it with a typed Pydantic model

Inputs:
  - CLI strings and YAML config paths

Outputs:
  - BridgeTarget and ResponderConfig instances
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, validator

from ..identity import (
    DEFAULT_DESCRIPTION_PATH,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_REFRESH_INTERVAL,
    BridgeTarget,
)
from ..ssdp.protocol import SSDP_MULTICAST_GROUP, SSDP_PORT

BRIDGE_USAGE = "Exactly one parameter in the form 'server:service' is required."


class ConfigError(ValueError):
    """Raised for any startup configuration fault."""


class ListenConfig(BaseModel):
    """Brief: Where the multicast listener binds.

    Inputs:
      - host: Local IPv4 address to bind.
      - port: UDP port, 1900 for SSDP.
      - multicast_group: Group joined on the bound socket.
    """

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=SSDP_PORT, ge=1, le=65535)
    multicast_group: str = Field(default=SSDP_MULTICAST_GROUP)

    class Config:
        extra = "forbid"


class ResponderConfig(BaseModel):
    """Brief: Typed model for the optional YAML config file.

    Inputs:
      - listen: ListenConfig mapping.
      - refresh_interval: Seconds between permitted identity fetches.
      - fetch_timeout: Seconds allowed for one description fetch.
      - description_path: Path of the description document on the bridge.
      - logging: Mapping handed to init_logging.

    Outputs:
      - ResponderConfig instance with defaults filled in.
    """

    listen: ListenConfig = Field(default_factory=ListenConfig)
    refresh_interval: float = Field(default=DEFAULT_REFRESH_INTERVAL, gt=0)
    fetch_timeout: float = Field(default=DEFAULT_FETCH_TIMEOUT, gt=0)
    description_path: str = Field(default=DEFAULT_DESCRIPTION_PATH)
    logging: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "forbid"

    @validator("description_path")
    def _path_is_absolute(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("description_path must start with '/'")
        return v

    @validator("logging", pre=True)
    def _logging_none_is_empty(cls, v: Any) -> Any:
        return {} if v is None else v


def parse_bridge_target(value: Optional[str]) -> BridgeTarget:
    """Brief: Split a ``host:service`` argument at its first colon.

    Inputs:
      - value: Raw CLI argument.

    Outputs:
      - BridgeTarget with host and service kept verbatim.

    Raises:
      - ConfigError when the colon is missing or either part is empty.

    Example:
      >>> parse_bridge_target("my-hue.local:80")
      BridgeTarget(host='my-hue.local', service='80')
    """

    if not value or ":" not in value:
        raise ConfigError(BRIDGE_USAGE)
    host, service = value.split(":", 1)
    if not host or not service:
        raise ConfigError(BRIDGE_USAGE)
    return BridgeTarget(host=host, service=service)


def load_config(path: Optional[str]) -> ResponderConfig:
    """Brief: Read and validate the YAML config file.

    Inputs:
      - path: File path, or None to use built-in defaults.

    Outputs:
      - ResponderConfig.

    Raises:
      - ConfigError when the file cannot be read, is not valid YAML, is not a
        mapping, or fails validation.
    """

    if path is None:
        return ResponderConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    return config_from_mapping(raw, source=path)


def config_from_mapping(raw: Any, source: str = "<config>") -> ResponderConfig:
    """Validate an already-parsed mapping; None means an empty file."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {source} must be a mapping at top level")
    try:
        return ResponderConfig(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {source}: {e}") from e
