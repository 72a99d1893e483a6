"""stack-guard configuration: loading, validation and defaults."""

from stack_guard.config.defaults import DEFAULT_CONFIG
from stack_guard.config.loader import load_config, load_config_from_dict
from stack_guard.config.schema import StackGuardConfig

__all__ = [
    "load_config",
    "load_config_from_dict",
    "StackGuardConfig",
    "DEFAULT_CONFIG",
]
