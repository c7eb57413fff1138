"""
Pairwise feature extraction for top-picks ranking.

This module turns a (subject, candidate) pair into a ScoreBreakdown: eight
sub-scores in [0, 100] that describe how well the candidate fits the subject.

Factor Types:
- Distance-based: age difference, great-circle distance, time since last activity
- Set-based: Jaccard overlap of interests
- Lookup-based: height range, ethnicity preference, occupation affinity
- Direct: the candidate's own profile quality

A factor that cannot be computed (missing coordinates, unknown category,
out-of-range indicator) raises InvalidInputError internally and is replaced by
the neutral score. Such problems never escape extract_features.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Tuple, FrozenSet

import numpy as np

from ..errors import InvalidInputError
from ..profiles.schema import CandidateProfile, ScoreBreakdown

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

DEFAULT_OCCUPATION_CATEGORIES = (
    "tech", "engineering", "science", "healthcare", "education", "finance",
    "business", "law", "arts", "media", "hospitality", "trades", "public_service",
    "student", "other",
)

DEFAULT_OCCUPATION_AFFINITY = [
    ("tech", "engineering", 75.0),
    ("tech", "science", 65.0),
    ("engineering", "science", 70.0),
    ("healthcare", "science", 65.0),
    ("healthcare", "education", 60.0),
    ("education", "public_service", 60.0),
    ("finance", "business", 75.0),
    ("business", "law", 65.0),
    ("finance", "law", 60.0),
    ("arts", "media", 75.0),
    ("hospitality", "arts", 55.0),
]


@dataclass
class FeatureConfig:
    """
    Thresholds and lookup tables for factor extraction.

    Attributes:
        neutral_score: Score substituted when a factor has no signal
        max_age_difference: Age gap (years) at which the age score reaches 0
        max_distance_km: Distance at which the location score reaches 0
        staleness_days: Inactivity at which the recency score reaches 0
        height_tolerance_cm: Margin outside the preferred range that still counts as "near"
        occupation_categories: Recognized occupation categories
        occupation_affinity: Symmetric (category_a, category_b, score) entries
    """
    neutral_score: float = 50.0
    max_age_difference: float = 15.0
    max_distance_km: float = 50.0
    staleness_days: float = 30.0
    height_tolerance_cm: float = 5.0
    height_in_range_score: float = 100.0
    height_near_range_score: float = 70.0
    height_out_of_range_score: float = 20.0
    ethnicity_match_score: float = 100.0
    ethnicity_mismatch_score: float = 20.0
    occupation_same_score: float = 80.0
    occupation_default_score: float = 40.0
    occupation_categories: Tuple[str, ...] = DEFAULT_OCCUPATION_CATEGORIES
    occupation_affinity: List[Tuple[str, str, float]] = field(
        default_factory=lambda: list(DEFAULT_OCCUPATION_AFFINITY)
    )

    def validate(self) -> None:
        """Validate configuration values."""
        for name in ("max_age_difference", "max_distance_km", "staleness_days"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.height_tolerance_cm < 0:
            raise ValueError(f"height_tolerance_cm must be non-negative, got {self.height_tolerance_cm}")

        scores = [
            self.neutral_score, self.height_in_range_score, self.height_near_range_score,
            self.height_out_of_range_score, self.ethnicity_match_score,
            self.ethnicity_mismatch_score, self.occupation_same_score,
            self.occupation_default_score,
        ] + [entry[2] for entry in self.occupation_affinity]
        for s in scores:
            if not 0 <= s <= 100:
                raise ValueError(f"Lookup scores must be in [0, 100], got {s}")

        known = set(self.occupation_categories)
        for a, b, _ in self.occupation_affinity:
            if a not in known or b not in known:
                raise ValueError(f"Occupation affinity ({a}, {b}) uses an unknown category")

    def occupation_table(self) -> Dict[FrozenSet[str], float]:
        """Affinity lookup keyed by unordered category pair."""
        return {frozenset((a, b)): float(s) for a, b, s in self.occupation_affinity}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "neutral_score": self.neutral_score,
            "max_age_difference": self.max_age_difference,
            "max_distance_km": self.max_distance_km,
            "staleness_days": self.staleness_days,
            "height_tolerance_cm": self.height_tolerance_cm,
            "height_in_range_score": self.height_in_range_score,
            "height_near_range_score": self.height_near_range_score,
            "height_out_of_range_score": self.height_out_of_range_score,
            "ethnicity_match_score": self.ethnicity_match_score,
            "ethnicity_mismatch_score": self.ethnicity_mismatch_score,
            "occupation_same_score": self.occupation_same_score,
            "occupation_default_score": self.occupation_default_score,
            "occupation_categories": list(self.occupation_categories),
            "occupation_affinity": [list(entry) for entry in self.occupation_affinity],
        }

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "FeatureConfig":
        """Create from main config dictionary."""
        features = dict(config.get("features", {}))

        if "occupation_categories" in features:
            features["occupation_categories"] = tuple(
                c.lower() for c in features["occupation_categories"]
            )
        if "occupation_affinity" in features:
            features["occupation_affinity"] = [
                (a.lower(), b.lower(), float(s)) for a, b, s in features["occupation_affinity"]
            ]

        feature_config = cls(**features)
        feature_config.validate()
        return feature_config


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points in kilometres.

    Args:
        lat1, lon1: First point in degrees
        lat2, lon2: Second point in degrees

    Returns:
        Distance in km
    """
    phi1, phi2 = np.radians(lat1), np.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = np.radians(lon2 - lon1)

    a = np.sin(d_phi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(d_lambda / 2) ** 2
    # Guard against rounding pushing a slightly above 1
    a = np.clip(a, 0.0, 1.0)
    return float(2 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(a)))


def _linear_decay(value: float, limit: float) -> float:
    """100 at value 0, falling linearly to 0 at limit and beyond."""
    return float(100.0 * np.clip(1.0 - value / limit, 0.0, 1.0))


def age_score(subject: CandidateProfile, candidate: CandidateProfile, config: FeatureConfig) -> float:
    if subject.age is None or candidate.age is None:
        raise InvalidInputError("age missing")
    return _linear_decay(abs(subject.age - candidate.age), config.max_age_difference)


def location_score(subject: CandidateProfile, candidate: CandidateProfile, config: FeatureConfig) -> float:
    if not subject.has_coordinates or not candidate.has_coordinates:
        raise InvalidInputError("coordinates missing")
    for lat, lon in ((subject.latitude, subject.longitude), (candidate.latitude, candidate.longitude)):
        if not (-90 <= lat <= 90 and -180 <= lon <= 180):
            raise InvalidInputError(f"coordinates out of range: ({lat}, {lon})")

    distance = haversine_km(subject.latitude, subject.longitude,
                            candidate.latitude, candidate.longitude)
    return _linear_decay(distance, config.max_distance_km)


def interest_score(subject: CandidateProfile, candidate: CandidateProfile, config: FeatureConfig) -> float:
    """Jaccard overlap of interest sets scaled to [0, 100]."""
    union = subject.interests | candidate.interests
    if not union:
        # No signal on either side
        raise InvalidInputError("both interest sets empty")
    return 100.0 * len(subject.interests & candidate.interests) / len(union)


def height_score(subject: CandidateProfile, candidate: CandidateProfile, config: FeatureConfig) -> float:
    """Candidate height against the subject's preferred range."""
    if subject.preferred_height_range is None:
        raise InvalidInputError("no height preference")
    if candidate.height_cm is None or np.isnan(candidate.height_cm) or candidate.height_cm <= 0:
        raise InvalidInputError("candidate height unknown")

    low, high = subject.preferred_height_range
    height = candidate.height_cm
    if low <= height <= high:
        return config.height_in_range_score
    if low - config.height_tolerance_cm <= height <= high + config.height_tolerance_cm:
        return config.height_near_range_score
    return config.height_out_of_range_score


def ethnicity_score(subject: CandidateProfile, candidate: CandidateProfile, config: FeatureConfig) -> float:
    """Candidate ethnicity against the subject's declared preferences."""
    if not subject.ethnicity_preferences:
        raise InvalidInputError("no ethnicity preference")
    if candidate.ethnicity is None:
        raise InvalidInputError("candidate ethnicity unknown")

    if candidate.ethnicity in subject.ethnicity_preferences:
        return config.ethnicity_match_score
    return config.ethnicity_mismatch_score


def occupation_score(
    subject: CandidateProfile,
    candidate: CandidateProfile,
    config: FeatureConfig,
    table: Optional[Dict[FrozenSet[str], float]] = None
) -> float:
    """Symmetric category-pair lookup."""
    known = config.occupation_categories
    a, b = subject.occupation, candidate.occupation
    if a not in known or b not in known:
        raise InvalidInputError(f"unknown occupation category: {a!r} / {b!r}")

    if a == b:
        return config.occupation_same_score
    if table is None:
        table = config.occupation_table()
    return table.get(frozenset((a, b)), config.occupation_default_score)


def quality_score(subject: CandidateProfile, candidate: CandidateProfile, config: FeatureConfig) -> float:
    quality = candidate.profile_quality
    if quality is None or not 0 <= quality <= 1:
        raise InvalidInputError(f"profile quality unavailable or out of range: {quality}")
    return 100.0 * quality


def recency_score(
    subject: CandidateProfile,
    candidate: CandidateProfile,
    config: FeatureConfig,
    as_of: datetime
) -> float:
    """Linear decay of time since last activity; future timestamps count as now."""
    if candidate.last_active is None:
        raise InvalidInputError("last_active missing")

    last_active = candidate.last_active
    # Compare naive timestamps as UTC
    if last_active.tzinfo is None and as_of.tzinfo is not None:
        last_active = last_active.replace(tzinfo=timezone.utc)
    elif last_active.tzinfo is not None and as_of.tzinfo is None:
        as_of = as_of.replace(tzinfo=timezone.utc)

    elapsed_days = max((as_of - last_active).total_seconds(), 0.0) / 86400.0
    return _linear_decay(elapsed_days, config.staleness_days)


def _or_neutral(fn, subject, candidate, config, *args) -> float:
    try:
        return fn(subject, candidate, config, *args)
    except InvalidInputError as e:
        logger.debug(
            f"{fn.__name__} neutral for {subject.profile_id}->{candidate.profile_id}: {e}"
        )
        return config.neutral_score


def extract_features(
    subject: CandidateProfile,
    candidate: CandidateProfile,
    config: Optional[FeatureConfig] = None,
    as_of: Optional[datetime] = None,
    occupation_table: Optional[Dict[FrozenSet[str], float]] = None
) -> ScoreBreakdown:
    """
    Compute the factor breakdown of a candidate for a subject.

    Args:
        subject: The user the picks are computed for
        candidate: The prospective match
        config: Factor thresholds and lookup tables (defaults if None)
        as_of: Reference time for recency (defaults to now, UTC)
        occupation_table: Precomputed config.occupation_table() for batch use

    Returns:
        ScoreBreakdown with every sub-score defined
    """
    if config is None:
        config = FeatureConfig()
    if as_of is None:
        as_of = datetime.now(timezone.utc)

    return ScoreBreakdown(
        age_compatibility=_or_neutral(age_score, subject, candidate, config),
        location_compatibility=_or_neutral(location_score, subject, candidate, config),
        interest_overlap=_or_neutral(interest_score, subject, candidate, config),
        height_compatibility=_or_neutral(height_score, subject, candidate, config),
        ethnicity_compatibility=_or_neutral(ethnicity_score, subject, candidate, config),
        occupation_compatibility=_or_neutral(
            occupation_score, subject, candidate, config, occupation_table
        ),
        profile_quality=_or_neutral(quality_score, subject, candidate, config),
        engagement_recency=_or_neutral(recency_score, subject, candidate, config, as_of),
    )
