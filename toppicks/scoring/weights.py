"""
Versioned factor weights for compatibility scoring.

Weights are fixed per algorithm version. The version tag and the full weight
set are stored with every epoch of results so that a breakdown stays
interpretable after the weights change.

Score Formula:
    score = round(sum(w_i * b_i) / sum(w_i))
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Any
import json

import numpy as np

from ..profiles.schema import FACTOR_NAMES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoringWeights:
    """
    Relative weight per factor, tagged with an algorithm version.

    Weights need not sum to 1; the scorer normalizes by their total.
    """
    age_compatibility: float = 15.0
    location_compatibility: float = 20.0
    interest_overlap: float = 20.0
    height_compatibility: float = 5.0
    ethnicity_compatibility: float = 5.0
    occupation_compatibility: float = 5.0
    profile_quality: float = 15.0
    engagement_recency: float = 15.0
    version: str = "v1"

    def validate(self) -> None:
        """Validate configuration values."""
        for name in FACTOR_NAMES:
            val = getattr(self, name)
            if val < 0:
                raise ValueError(f"Weight for {name} must be non-negative, got {val}")
        if self.total() <= 0:
            raise ValueError("At least one factor weight must be positive")
        if not self.version:
            raise ValueError("Weights must carry a non-empty version tag")

    def total(self) -> float:
        return float(sum(getattr(self, name) for name in FACTOR_NAMES))

    def as_vector(self) -> np.ndarray:
        """Weights as a float vector in FACTOR_NAMES order."""
        return np.array([getattr(self, name) for name in FACTOR_NAMES], dtype=float)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ScoringWeights":
        """Create from dictionary."""
        return cls(**d)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ScoringWeights":
        """Create from main config dictionary."""
        scoring_config = config.get("scoring", {})
        weights_config = scoring_config.get("weights", {})

        unknown = set(weights_config) - set(FACTOR_NAMES)
        if unknown:
            raise ValueError(f"Unknown scoring factors in config: {sorted(unknown)}")

        weights = cls(
            version=str(scoring_config.get("version", "v1")),
            **{name: float(w) for name, w in weights_config.items()}
        )
        weights.validate()
        return weights

    def save(self, filepath: str) -> None:
        """Save to JSON file."""
        with open(filepath, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Saved scoring weights {self.version} to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> "ScoringWeights":
        """Load from JSON file."""
        with open(filepath, "r") as f:
            d = json.load(f)
        return cls.from_dict(d)
