"""Configuration loading utilities."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from sage_agent.config.schema import Config
from sage_agent.errors import ConfigError
from sage_agent.utils.helpers import convert_keys, get_data_path

_PRESERVED_KEYS = frozenset({"model_overrides", "extra_headers"})


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return get_data_path() / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file, layered over environment and defaults.

    Keys may be camelCase or snake_case. A missing file yields defaults.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()
    if not path.exists():
        logger.debug(f"No config file at {path}; using defaults")
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config from {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root in {path} must be an object")

    data: dict[str, Any] = convert_keys(raw, _PRESERVED_KEYS)
    try:
        return Config(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}: {e}") from e
