"""Configuration loading and logging setup."""

from .loader import load_config, validate_config, get_config_value, setup_logging

__all__ = [
    "load_config",
    "validate_config",
    "get_config_value",
    "setup_logging"
]
