"""Feature engineering module for pairwise factor extraction."""

from .pairwise_features import (
    FeatureConfig,
    extract_features,
    haversine_km
)

__all__ = [
    "FeatureConfig",
    "extract_features",
    "haversine_km"
]
