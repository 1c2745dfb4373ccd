"""Scenario configuration loading and validation utilities."""

from .loader import (
    ConfigError,
    apply_overrides,
    build_simulation,
    load_scenario_config,
    normalize_config_dict,
)

__all__ = [
    "ConfigError",
    "apply_overrides",
    "build_simulation",
    "load_scenario_config",
    "normalize_config_dict",
]
