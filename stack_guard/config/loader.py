"""
Configuration Loader
~~~~~~~~~~~~~~~~~~~~

Loads and validates ``stack-guard.yaml``, merging with defaults.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import yaml
from pydantic import ValidationError

from stack_guard.config.defaults import DEFAULT_CONFIG
from stack_guard.config.schema import StackGuardConfig
from stack_guard.exceptions import (
    ConfigFileNotFoundError,
    ConfigValidationError,
)

__all__ = ["load_config", "load_config_from_dict"]

logger = logging.getLogger(__name__)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts, with override taking precedence."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(path: str) -> StackGuardConfig:
    """
    Load configuration from a YAML file.

    Merges user config with defaults and validates via Pydantic. A relative
    ``project.base_dir`` is taken relative to the config file's directory.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Validated StackGuardConfig instance.

    Raises:
        ConfigFileNotFoundError: If the file doesn't exist.
        ConfigValidationError: If the config fails validation.
    """
    if not os.path.exists(path):
        raise ConfigFileNotFoundError(f"Configuration file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            user_config = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigValidationError(
            f"Invalid YAML in configuration file: {exc}"
        ) from exc

    if not isinstance(user_config, dict):
        raise ConfigValidationError(
            f"Configuration root must be a mapping, got {type(user_config).__name__}"
        )

    project = user_config.get("project") or {}
    base_dir = project.get("base_dir", ".")
    if not os.path.isabs(os.path.expanduser(str(base_dir))):
        config_dir = os.path.dirname(os.path.abspath(path))
        user_config = _deep_merge(
            user_config,
            {"project": {"base_dir": os.path.join(config_dir, str(base_dir))}},
        )

    logger.debug("Loaded configuration from %s", path)
    return load_config_from_dict(user_config)


def load_config_from_dict(data: dict[str, Any]) -> StackGuardConfig:
    """
    Load configuration from a dictionary, merging with defaults.

    Args:
        data: Configuration dictionary.

    Returns:
        Validated StackGuardConfig instance.

    Raises:
        ConfigValidationError: If validation fails.
    """
    merged = _deep_merge(DEFAULT_CONFIG, data)

    try:
        return StackGuardConfig(**merged)
    except ValidationError as exc:
        raise ConfigValidationError(f"Configuration validation failed: {exc}") from exc
