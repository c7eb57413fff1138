"""
Configuration loading and validation.

This module handles loading of YAML configuration files and
validates that all required fields are present.
"""

import logging
from pathlib import Path
from typing import Dict, Any, List

import yaml

from ..profiles.schema import FACTOR_NAMES

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: str = "INFO") -> None:
    """Configure root logging format and level."""
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


def load_config(filepath: str) -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        filepath: Path to the YAML configuration file

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    logger.info(f"Loading configuration from {filepath}")
    with open(filepath, "r") as f:
        config = yaml.safe_load(f)

    if config is None:
        raise ValueError(f"Configuration file is empty: {filepath}")

    return config


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Validate configuration and return list of warnings/errors.

    Args:
        config: Configuration dictionary

    Returns:
        List of warning/error messages (empty if valid)
    """
    issues = []

    # Check required top-level sections
    required_sections = ["global", "features", "scoring", "ranking", "storage"]

    for section in required_sections:
        if section not in config:
            issues.append(f"Missing required section: {section}")

    # Check scoring weights
    if "scoring" in config:
        scoring = config["scoring"]
        if "version" not in scoring:
            issues.append("Missing scoring.version (required to interpret stored breakdowns)")
        weights = scoring.get("weights", {})
        unknown = sorted(set(weights) - set(FACTOR_NAMES))
        if unknown:
            issues.append(f"Unknown scoring factors: {unknown}")
        if any(w < 0 for w in weights.values()):
            issues.append("Scoring weights must be non-negative")
        elif weights and sum(weights.values()) <= 0:
            issues.append("Scoring weights must have a positive total")

    # Check ranking parameters
    if "ranking" in config:
        ranking = config["ranking"]
        top_n = ranking.get("top_n", 10)
        if not isinstance(top_n, int) or top_n < 1:
            issues.append(f"ranking.top_n must be a positive integer, got {top_n}")
        timeout = ranking.get("timeout_seconds")
        if timeout is not None and timeout <= 0:
            issues.append(f"ranking.timeout_seconds must be positive, got {timeout}")

    # Check storage backend
    if "storage" in config:
        storage = config["storage"]
        backend = storage.get("backend", "memory")
        if backend not in ["memory", "file"]:
            issues.append(f"Unknown storage backend: {backend}")
        if backend == "file" and not storage.get("path"):
            issues.append("Missing storage.path for the file backend")

    # Check feature thresholds
    if "features" in config:
        features = config["features"]
        for key in ["max_age_difference", "max_distance_km", "staleness_days"]:
            if key in features and features[key] <= 0:
                issues.append(f"features.{key} must be positive, got {features[key]}")

    return issues


def get_config_value(config: Dict[str, Any], path: str, default: Any = None) -> Any:
    """
    Get a nested configuration value using dot notation.

    Args:
        config: Configuration dictionary
        path: Dot-separated path (e.g., "ranking.top_n")
        default: Default value if path doesn't exist

    Returns:
        Configuration value or default
    """
    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value
