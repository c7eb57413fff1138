"""
Profile and score-breakdown schema for top-picks ranking.

A CandidateProfile is an immutable snapshot of the attributes the ranking
reads from a user record. The same type describes the subject: the subject's
own preferences (ethnicity, height range) live on the profile as well.

ScoreBreakdown holds the eight factor sub-scores (0-100 each). Missing source
data never produces a missing sub-score; the extractor substitutes the neutral
default instead, so the aggregate score is always defined.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Optional, Dict, Any, FrozenSet, Tuple, Iterable

import numpy as np

# Canonical factor order shared by breakdowns and weight vectors
FACTOR_NAMES: Tuple[str, ...] = (
    "age_compatibility",
    "location_compatibility",
    "interest_overlap",
    "height_compatibility",
    "ethnicity_compatibility",
    "occupation_compatibility",
    "profile_quality",
    "engagement_recency",
)


def _normalize_tags(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    """Lower-case and strip a collection of free-form tags, dropping empties."""
    if values is None:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    return frozenset(v.strip().lower() for v in values if v and v.strip())


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class CandidateProfile:
    """
    Subject-visible attributes of a user.

    Attributes:
        profile_id: Stable user identifier
        age: Age in years
        latitude: Latitude in degrees
        longitude: Longitude in degrees
        interests: Declared interests (normalized to lower case)
        height_cm: Height in centimetres
        ethnicity: Ethnicity tag
        occupation: Occupation category
        profile_quality: Completeness/verification indicator in [0, 1]
        last_active: Timestamp of the last recorded activity
        ethnicity_preferences: Ethnicities this user prefers (empty = any)
        preferred_height_range: (min_cm, max_cm) this user prefers
    """
    profile_id: str
    age: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    interests: FrozenSet[str] = field(default_factory=frozenset)
    height_cm: Optional[float] = None
    ethnicity: Optional[str] = None
    occupation: Optional[str] = None
    profile_quality: Optional[float] = None
    last_active: Optional[datetime] = None
    ethnicity_preferences: FrozenSet[str] = field(default_factory=frozenset)
    preferred_height_range: Optional[Tuple[float, float]] = None

    def __post_init__(self):
        """Validate the identifier and normalize tag collections."""
        if not isinstance(self.profile_id, str) or not self.profile_id:
            raise ValueError(f"profile_id must be a non-empty string, got {self.profile_id!r}")

        # Frozen dataclass: normalization goes through object.__setattr__
        object.__setattr__(self, "interests", _normalize_tags(self.interests))
        object.__setattr__(
            self, "ethnicity_preferences", _normalize_tags(self.ethnicity_preferences)
        )
        if self.ethnicity is not None:
            object.__setattr__(self, "ethnicity", self.ethnicity.strip().lower() or None)
        if self.occupation is not None:
            object.__setattr__(self, "occupation", self.occupation.strip().lower() or None)
        if self.preferred_height_range is not None:
            low, high = self.preferred_height_range
            if low > high:
                raise ValueError(
                    f"preferred_height_range must be (min, max), got {self.preferred_height_range}"
                )
            object.__setattr__(self, "preferred_height_range", (float(low), float(high)))

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "profile_id": self.profile_id,
            "age": self.age,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "interests": sorted(self.interests),
            "height_cm": self.height_cm,
            "ethnicity": self.ethnicity,
            "occupation": self.occupation,
            "profile_quality": self.profile_quality,
            "last_active": self.last_active.isoformat() if self.last_active else None,
            "ethnicity_preferences": sorted(self.ethnicity_preferences),
            "preferred_height_range": (
                list(self.preferred_height_range) if self.preferred_height_range else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandidateProfile":
        """Create from dictionary (inverse of to_dict)."""
        height_range = data.get("preferred_height_range")
        return cls(
            profile_id=data["profile_id"],
            age=data.get("age"),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            interests=data.get("interests") or frozenset(),
            height_cm=data.get("height_cm"),
            ethnicity=data.get("ethnicity"),
            occupation=data.get("occupation"),
            profile_quality=data.get("profile_quality"),
            last_active=_parse_datetime(data.get("last_active")),
            ethnicity_preferences=data.get("ethnicity_preferences") or frozenset(),
            preferred_height_range=tuple(height_range) if height_range else None,
        )


@dataclass(frozen=True)
class ScoreBreakdown:
    """
    Per-factor compatibility sub-scores, each in [0, 100].

    Field order matches FACTOR_NAMES.
    """
    age_compatibility: float
    location_compatibility: float
    interest_overlap: float
    height_compatibility: float
    ethnicity_compatibility: float
    occupation_compatibility: float
    profile_quality: float
    engagement_recency: float

    def __post_init__(self):
        """Validate sub-score bounds."""
        for f in fields(self):
            val = getattr(self, f.name)
            if val is None or not 0 <= val <= 100:
                raise ValueError(f"{f.name} must be in [0, 100], got {val}")

    def as_vector(self) -> np.ndarray:
        """Sub-scores as a float vector in FACTOR_NAMES order."""
        return np.array([getattr(self, name) for name in FACTOR_NAMES], dtype=float)

    def to_dict(self) -> Dict[str, float]:
        return {name: float(getattr(self, name)) for name in FACTOR_NAMES}

    @classmethod
    def from_dict(cls, d: Dict[str, float]) -> "ScoreBreakdown":
        return cls(**{name: d[name] for name in FACTOR_NAMES})
