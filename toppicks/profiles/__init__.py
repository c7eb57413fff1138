"""Profile snapshots and score breakdowns."""

from .schema import CandidateProfile, ScoreBreakdown, FACTOR_NAMES

__all__ = [
    "CandidateProfile",
    "ScoreBreakdown",
    "FACTOR_NAMES",
]
